"""
Structured error types for statespine.

Provides a small hierarchy of typed errors with a category, structured
context and an optional chained cause, so callers (and log processors)
can tell a cache-construction failure from a broken watcher callback
without parsing messages.

Manifesto:
    - **Typed Error Hierarchy:** One subclass per failure domain
    - **Rich Context:** Errors carry the constructor, key and origin involved
    - **Error Chaining:** The underlying exception is preserved as ``cause``
    - **Builtin compatibility:** Errors that mirror a builtin failure
      (``TypeError``, ``LookupError``) also subclass it

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────┐
        │                    StateSpineError                        │
        │            (category, context, cause, to_dict)            │
        ├──────────────────────────────────────────────────────────┤
        │  ProvideError (PROVIDE)      WatcherCallbackError         │
        │    ├─ ReentrantConstruction  (DISPATCH)                   │
        │    ├─ UncacheableInstance                                 │
        │    └─ UnknownInstance        ConfigError (CONFIG)         │
        └──────────────────────────────────────────────────────────┘

Examples:
    >>> error = ReentrantConstructionError("Model is already being built")
    >>> error.category
    <ErrorCategory.PROVIDE: 'PROVIDE'>
    >>> error.with_context(constructor="Model").context.constructor
    'Model'

Tags:
    error-handling, exception-hierarchy, error-context, statespine

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and log routing."""

    OBSERVE = "OBSERVE"  # Interception, wrapping
    DISPATCH = "DISPATCH"  # Watcher callbacks
    PROVIDE = "PROVIDE"  # Canonical instance cache
    CONFIG = "CONFIG"  # Settings
    INTERNAL = "INTERNAL"  # Bugs, unexpected state


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        constructor: Qualified name of the constructor involved
        key_length: Number of parts in the instance key
        origin_type: Type name of the raw object involved
        path: Change path being dispatched when the error happened
        metadata: Additional key-value pairs
    """

    constructor: str | None = None
    key_length: int | None = None
    origin_type: str | None = None
    path: tuple[Any, ...] | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        for key in ["constructor", "key_length", "origin_type", "path"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class StateSpineError(Exception):
    """
    Base exception for all statespine errors.

    Subclasses set ``default_category``. Every instance carries a
    ``category``, an :class:`ErrorContext` and an optional ``cause``.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> StateSpineError:
        """Add context fields, unknown names go to ``metadata``. Returns self."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for structured logging."""
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
        }
        context = self.context.to_dict()
        if context:
            result["context"] = context
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CANONICAL INSTANCE CACHE
# =============================================================================


class ProvideError(StateSpineError):
    """Failure in the canonical instance cache."""

    default_category = ErrorCategory.PROVIDE


class ReentrantConstructionError(ProvideError):
    """A constructor asked its own factory for the key it is building."""


class UncacheableInstanceError(ProvideError, TypeError):
    """A constructor returned an object that cannot be weakly referenced."""


class UnknownInstanceError(ProvideError, LookupError):
    """The object was not produced by this runtime's cache."""


# =============================================================================
# DISPATCH
# =============================================================================


class WatcherCallbackError(StateSpineError):
    """A watcher callback raised while a change was being delivered."""

    default_category = ErrorCategory.DISPATCH


# =============================================================================
# CONFIG
# =============================================================================


class ConfigError(StateSpineError):
    """Invalid runtime configuration."""

    default_category = ErrorCategory.CONFIG


__all__ = [
    "ConfigError",
    "ErrorCategory",
    "ErrorContext",
    "ProvideError",
    "ReentrantConstructionError",
    "StateSpineError",
    "UncacheableInstanceError",
    "UnknownInstanceError",
    "WatcherCallbackError",
]
