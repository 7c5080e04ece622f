"""JSON export of policies, query classes, settings and other descriptions.

Objects can take part in the export by providing a ``__json__`` method that returns a JSON-serializable representation
(usually a `jsondict`). Dataclasses without such a method are exported field by field.
"""
from __future__ import annotations

import dataclasses
import enum
import json
from typing import Any

jsondict = dict
"""Type alias for a JSON-serializable dictionary."""


class JsonizeEncoder(json.JSONEncoder):
    """Encoder that understands enums, sets, dataclasses and objects with a ``__json__`` method.

    Enums are encoded by their value. Sets of hashes are encoded as sorted lists, all other sets as plain lists.
    """

    def default(self, obj: Any) -> Any:
        if hasattr(obj, "__json__"):
            return obj.__json__()
        if isinstance(obj, enum.Enum):
            return obj.value
        if isinstance(obj, (set, frozenset)):
            return sorted(obj) if all(isinstance(value, int) for value in obj) else list(obj)
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return dataclasses.asdict(obj)
        return super().default(obj)


def to_json(obj: Any, **kwargs) -> str:
    """Serializes an object with the `JsonizeEncoder`. All keyword arguments are passed on to `json.dumps`."""
    kwargs.pop("cls", None)
    return json.dumps(obj, cls=JsonizeEncoder, **kwargs)
