"""Contains utilities that are not specific to adaptq's domain of query classification and cardinality prediction."""

import lazy_loader

__getattr__, __dir__, __all__ = lazy_loader.attach_stub(
    __name__,
    __file__,
)
