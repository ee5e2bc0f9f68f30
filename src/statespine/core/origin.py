"""
Origin tracking.

Every wrapper the runtime hands out stands in for exactly one raw object,
its *origin*. Identity comparisons throughout the runtime (no-op writes,
cache keys, watcher lookup) are made between origins, never between
wrappers.

Tags:
    statespine, origin, identity, proxy

Doc-Types:
    api-reference
"""

from __future__ import annotations

from typing import Any, TypeVar

T = TypeVar("T")


class OriginRef:
    """Base for objects standing in for a raw origin."""

    __slots__ = ("_origin",)

    def __init__(self, origin: Any) -> None:
        object.__setattr__(self, "_origin", origin)


def get_origin(value: T) -> T:
    """Strip one layer of wrapping. A no-op for raw values."""
    if isinstance(value, OriginRef):
        return object.__getattribute__(value, "_origin")
    return value


def is_observed(value: Any) -> bool:
    """True when ``value`` is a wrapper rather than a raw object."""
    return isinstance(value, OriginRef)


def same_origin(left: Any, right: Any) -> bool:
    """Identity comparison between the origins of two values."""
    return get_origin(left) is get_origin(right)


__all__ = ["OriginRef", "get_origin", "is_observed", "same_origin"]
