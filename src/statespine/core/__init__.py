"""StateSpine Core -- transparent change tracking and canonical instances.

Manifesto:
    UI bindings, loaders and dependency registries all need the same two
    things from plain model objects: notification when anything reachable
    from the model changes, and one shared instance per logical identity.
    Without a shared core each consumer re-implements dirty tracking with
    subtly different paths, no-op rules and cycle handling.

    - **No base classes:** Any plain instance, list or dict can be observed
    - **Path-qualified events:** ``(path, old_value, new_value)`` per mutation
    - **Weakly cached:** Canonical instances live only as long as their users
    - **Explicit runtime:** All tables belong to a ``ReactiveRuntime``

Architecture::

    Layer 1 -- Errors, Settings, Logging
        errors.py          Structured error hierarchy (StateSpineError)
        settings.py        RuntimeSettings (pydantic-settings, STATESPINE_*)
        logging.py         structlog configuration + get_logger

    Layer 2 -- Identity & Subscriptions
        origin.py          get_origin / OriginRef wrapper base
        watchers.py        Per-origin tagged callback tables

    Layer 3 -- Engines
        observe.py         ObservationEngine + ObservedProxy
        provide.py         InstanceCache + CanonicalFactory

    Layer 4 -- Composition
        runtime.py         ReactiveRuntime + module-level API

Module Map (recommended reading order)
--------------------------------------
  origin            What a proxy stands in for
  watchers          Where callbacks and child relays live
  observe           Read/write/delete interception and dispatch
  provide           Trie of weakly-held canonical instances
  runtime           Wiring and the default runtime
  errors            Error categories and context

Tags:
    statespine, reactive, observe, provide, weakref, core

Doc-Types:
    package-overview, architecture-map, module-index
"""

from statespine.core.errors import (
    ConfigError,
    ErrorCategory,
    ErrorContext,
    ProvideError,
    ReentrantConstructionError,
    StateSpineError,
    UncacheableInstanceError,
    UnknownInstanceError,
    WatcherCallbackError,
)
from statespine.core.logging import configure_logging, get_logger
from statespine.core.observe import (
    UNSAFE_TYPES,
    VALUE_TYPES,
    ObservationEngine,
    ObservedProxy,
)
from statespine.core.origin import OriginRef, get_origin, is_observed, same_origin
from statespine.core.provide import CanonicalFactory, FinalizationHandle, InstanceCache
from statespine.core.runtime import (
    ReactiveRuntime,
    finalization_registry,
    get_runtime,
    observe,
    provide,
    reset_runtime,
    revoke,
    set_runtime,
    watch,
)
from statespine.core.settings import RuntimeSettings, clear_settings_cache, get_settings
from statespine.core.watchers import Unwatch, WatchCallback, WatchEntry, WatcherRegistry

__all__ = [
    # Errors
    "ConfigError",
    "ErrorCategory",
    "ErrorContext",
    "ProvideError",
    "ReentrantConstructionError",
    "StateSpineError",
    "UncacheableInstanceError",
    "UnknownInstanceError",
    "WatcherCallbackError",
    # Logging
    "configure_logging",
    "get_logger",
    # Observation
    "ObservationEngine",
    "ObservedProxy",
    "UNSAFE_TYPES",
    "VALUE_TYPES",
    "OriginRef",
    "get_origin",
    "is_observed",
    "same_origin",
    # Canonical instances
    "CanonicalFactory",
    "FinalizationHandle",
    "InstanceCache",
    # Runtime
    "ReactiveRuntime",
    "finalization_registry",
    "get_runtime",
    "observe",
    "provide",
    "reset_runtime",
    "revoke",
    "set_runtime",
    "watch",
    # Settings
    "RuntimeSettings",
    "clear_settings_cache",
    "get_settings",
    # Watchers
    "Unwatch",
    "WatchCallback",
    "WatchEntry",
    "WatcherRegistry",
]
