"""
Reactive runtime - owner of every table the observation engine and the
instance cache share.

One :class:`ReactiveRuntime` holds one lock, one watcher registry, one
engine and one instance cache. The module-level functions delegate to a
lazily-created process default, swappable with :func:`set_runtime` for
tests or for isolated sub-systems.

Usage::

    from statespine import provide, watch

    Profile = provide(ProfileModel)
    alice = Profile("alice")
    unwatch = watch(alice, lambda path, old, new: print(path, old, new))
    alice.name = "Alice"        # ('name',) 'alice' 'Alice'

    # Or with an explicit runtime:
    runtime = ReactiveRuntime(RuntimeSettings(callback_errors="raise"))
    Profile = runtime.provide(ProfileModel)
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any, TypeVar

from statespine.core.observe import ObservationEngine
from statespine.core.origin import get_origin
from statespine.core.provide import CanonicalFactory, FinalizationHandle, InstanceCache
from statespine.core.settings import RuntimeSettings, get_settings
from statespine.core.watchers import Unwatch, WatchCallback, WatcherRegistry

T = TypeVar("T")


class ReactiveRuntime:
    """Observation engine and instance cache sharing one lock and one registry."""

    def __init__(self, settings: RuntimeSettings | None = None) -> None:
        self._settings = settings or get_settings()
        self._lock = threading.RLock()
        self._registry = WatcherRegistry(self._lock)
        self._engine = ObservationEngine(self._registry, lock=self._lock, settings=self._settings)
        self._cache = InstanceCache(self._engine, lock=self._lock)

    # ── Components ───────────────────────────────────────────────

    @property
    def settings(self) -> RuntimeSettings:
        return self._settings

    @property
    def registry(self) -> WatcherRegistry:
        return self._registry

    @property
    def engine(self) -> ObservationEngine:
        return self._engine

    @property
    def cache(self) -> InstanceCache:
        return self._cache

    # ── Observation ──────────────────────────────────────────────

    def observe(self, target: T) -> T:
        return self._engine.observe(target)

    def watch(self, target: Any, callback: WatchCallback) -> Unwatch:
        return self._engine.watch(target, callback)

    @staticmethod
    def get_origin(value: T) -> T:
        return get_origin(value)

    # ── Canonical instances ──────────────────────────────────────

    def provide(self, constructor: Callable[..., T]) -> CanonicalFactory:
        return self._cache.provide(constructor)

    def revoke(self, instance: Any) -> bool:
        return self._cache.revoke(instance)

    def finalization_registry(self, instance: Any) -> FinalizationHandle:
        return self._cache.finalization_registry(instance)

    # ── Lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        """Revoke every cached instance and drop every user watcher."""
        self._cache.clear()
        self._registry.clear()

    def __enter__(self) -> ReactiveRuntime:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"ReactiveRuntime(entries={len(self._registry)}, "
            f"cached={self._cache.live_count()})"
        )


# ── Global convenience ───────────────────────────────────────────────────

_runtime: ReactiveRuntime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> ReactiveRuntime:
    """Get (or create) the process-wide default :class:`ReactiveRuntime`."""
    global _runtime
    if _runtime is None:
        with _runtime_lock:
            if _runtime is None:
                _runtime = ReactiveRuntime()
    return _runtime


def set_runtime(runtime: ReactiveRuntime) -> None:
    """Replace the default runtime.

    Args:
        runtime: Runtime the module-level functions delegate to from now on
    """
    global _runtime
    _runtime = runtime


def reset_runtime() -> None:
    """Drop the default runtime (for testing)."""
    global _runtime
    _runtime = None


def observe(target: T) -> T:
    """Return the proxy for ``target`` (idempotent), or ``target`` if it is never wrapped."""
    return get_runtime().observe(target)


def watch(target: Any, callback: WatchCallback) -> Unwatch:
    """Subscribe ``callback(path, old_value, new_value)``; returns ``unwatch()``."""
    return get_runtime().watch(target, callback)


def provide(constructor: Callable[..., T]) -> CanonicalFactory:
    """Canonical factory for ``constructor``: same arguments, same live instance."""
    return get_runtime().provide(constructor)


def revoke(instance: Any) -> bool:
    """Evict ``instance`` from the cache now and fire its finalization callbacks."""
    return get_runtime().revoke(instance)


def finalization_registry(instance: Any) -> FinalizationHandle:
    """Handle for one-shot eviction callbacks on a cached instance."""
    return get_runtime().finalization_registry(instance)


__all__ = [
    "ReactiveRuntime",
    "finalization_registry",
    "get_runtime",
    "observe",
    "provide",
    "reset_runtime",
    "revoke",
    "set_runtime",
    "watch",
]
