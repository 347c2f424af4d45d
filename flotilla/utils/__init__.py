"""Utils module - concurrency helpers."""

from flotilla.utils.conc import for_each, join_all, staggered

__all__ = [
    "for_each",
    "join_all",
    "staggered",
]
