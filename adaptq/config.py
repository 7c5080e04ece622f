"""Settings that control the classification and prediction behavior.

Settings can be created directly, loaded from a JSON file or read from environment variables. A JSON settings file looks
like this:

.. code-block:: json

    {
        "mode": "intelligent",
        "force_collect_stat": false,
        "profile_capacity": 1000
    }

The optimization mode is stored as given and only resolved when it is applied. This way, an unknown mode aborts the
planning call that tries to use it, instead of silently falling back to some default. Use `validate` to check the
settings eagerly.
"""
from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ._core import AqoMode
from .util.errors import ConfigurationError
from .util.jsonize import jsondict

DefaultProxyPatterns = ("postgres_fdw", "pgfdw:")
"""Application names of connection proxies. Planning requests of such connections are never classified, to prevent
distributed deadlocks between pooled connections."""


@dataclass
class AqoSettings:
    """The global settings.

    Attributes
    ----------
    mode : AqoMode | str
        The optimization mode. Strings are resolved case-insensitively.
    force_collect_stat : bool
        Whether execution statistics should be collected for all queries, independent of the mode and the class settings
    profile_capacity : int
        The number of query classes that the profiling table can hold. Values <= 0 disable profiling.
    proxy_application_patterns : tuple[str, ...]
        Substrings of application names that identify connection proxies
    lock_timeout : float
        How long to wait for the lock of a query class before giving up on storing the class, in seconds
    debug : bool
        Whether classification and prediction decisions should be logged to stderr
    """
    mode: AqoMode | str = AqoMode.Controlled
    force_collect_stat: bool = False
    profile_capacity: int = 0
    proxy_application_patterns: tuple[str, ...] = DefaultProxyPatterns
    lock_timeout: float = 1.0
    debug: bool = False

    @staticmethod
    def from_dict(settings: dict[str, Any]) -> AqoSettings:
        """Creates settings from a dictionary. Missing keys keep their default values.

        Raises
        ------
        ConfigurationError
            If the dictionary contains unknown keys or values of the wrong type
        """
        known_keys = {f.name for f in dataclasses.fields(AqoSettings)}
        unknown_keys = set(settings) - known_keys
        if unknown_keys:
            raise ConfigurationError(f"Unknown settings: {', '.join(sorted(unknown_keys))}")

        parsed = dict(settings)
        try:
            if "force_collect_stat" in parsed:
                parsed["force_collect_stat"] = _parse_bool(parsed["force_collect_stat"])
            if "debug" in parsed:
                parsed["debug"] = _parse_bool(parsed["debug"])
            if "profile_capacity" in parsed:
                parsed["profile_capacity"] = int(parsed["profile_capacity"])
            if "lock_timeout" in parsed:
                parsed["lock_timeout"] = float(parsed["lock_timeout"])
            if "proxy_application_patterns" in parsed:
                parsed["proxy_application_patterns"] = tuple(parsed["proxy_application_patterns"])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Malformed settings: {e}") from e
        return AqoSettings(**parsed)

    @staticmethod
    def load(path: str | Path) -> AqoSettings:
        """Reads settings from a JSON file."""
        with open(path, "r") as settings_file:
            try:
                contents = json.load(settings_file)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"Settings file '{path}' is not valid JSON: {e}") from e
        if not isinstance(contents, dict):
            raise ConfigurationError(f"Settings file '{path}' must contain a JSON object")
        return AqoSettings.from_dict(contents)

    @staticmethod
    def from_env(prefix: str = "ADAPTQ_") -> AqoSettings:
        """Reads settings from environment variables, e.g. *ADAPTQ_MODE* or *ADAPTQ_PROFILE_CAPACITY*."""
        settings: dict[str, Any] = {}
        for field in dataclasses.fields(AqoSettings):
            value = os.getenv(prefix + field.name.upper())
            if value is None:
                continue
            settings[field.name] = value.split(",") if field.name == "proxy_application_patterns" else value
        return AqoSettings.from_dict(settings)

    def resolved_mode(self) -> AqoMode:
        """Provides the optimization mode.

        Raises
        ------
        ConfigurationError
            If the mode is unknown
        """
        return AqoMode.parse(self.mode)

    def validate(self) -> None:
        """Checks the settings eagerly and raises a `ConfigurationError` for invalid values."""
        self.resolved_mode()
        if self.lock_timeout < 0:
            raise ConfigurationError(f"Lock timeout must not be negative, not {self.lock_timeout}")

    @property
    def profiling_enabled(self) -> bool:
        return self.profile_capacity > 0

    def describe(self) -> jsondict:
        """Provides a JSON-serializable representation of the settings."""
        return {"mode": str(self.mode), "force_collect_stat": self.force_collect_stat,
                "profile_capacity": self.profile_capacity,
                "proxy_application_patterns": list(self.proxy_application_patterns),
                "lock_timeout": self.lock_timeout, "debug": self.debug}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Not a boolean value: {value!r}")
