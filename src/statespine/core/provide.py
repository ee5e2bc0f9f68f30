"""
Canonical instance cache - one live, observed instance per constructor and key.

``provide(Model)`` returns a :class:`CanonicalFactory`. Calling the factory
with the same arguments returns the same observed instance for as long as
anyone holds it; different arguments give different instances. Once the
instance becomes unreachable and the garbage collector reclaims it, its
cache entry is pruned and any finalization callbacks fire exactly once.

Manifesto:
    Models shared between independent consumers (two views on one record,
    a loader keyed by call arguments) need a single source of truth per
    key, without a central owner deciding when that truth can be dropped.

    - **Canonical:** Exactly one live instance per (constructor, key)
    - **Observed:** Every instance comes out already wrapped by the engine
    - **Weak:** The cache never keeps an instance alive on its own
    - **Deterministic escape hatch:** ``revoke`` evicts without waiting for GC

Architecture:
    ::

        _roots[id(Model)]
          └─ ("str", "alice")           ← one trie node per key part
               └─ (KEYWORD, "tier")
                    └─ ("int", 2)
                         └─ entry: weakref(instance) + finalize + callbacks

        lookup-or-create  ── under the runtime RLock
        finalize(instance) ─▶ _pending ─▶ _drain() ─▶ _evict() ─▶ callbacks

    Value-typed arguments (str, numbers, enums, ...) are keyed by type and
    value, everything else by origin identity. A node keeps its argument
    alive, so an ``id()`` cannot be recycled while a key still uses it.

Examples:
    >>> Profile = cache.provide(ProfileModel)
    >>> Profile("alice") is Profile("alice")
    True
    >>> Profile("alice") is Profile("bob")
    False
    >>> cache.finalization_registry(Profile("alice")).register(lambda: print("gone"))

Guardrails:
    ❌ DON'T: Capture the instance in its own finalization callback
    ✅ DO: Capture only what the cleanup needs (ids, names)

    ❌ DON'T: Rely on GC timing for correctness
    ✅ DO: Call ``revoke`` when the instance must go away now

Tags:
    statespine, provide, cache, canonical-instance, weakref, finalization

Doc-Types:
    - API Reference
    - Technical Design
"""

from __future__ import annotations

import threading
import weakref
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from types import FunctionType
from typing import Any

from statespine.core.errors import (
    ErrorContext,
    ReentrantConstructionError,
    UncacheableInstanceError,
    UnknownInstanceError,
)
from statespine.core.logging import get_logger
from statespine.core.observe import ObservationEngine, is_value
from statespine.core.origin import get_origin

logger = get_logger(__name__)

_IDENTITY = object()
_KEYWORD = object()

KeyPart = tuple[Any, Any]
Finalizer = Callable[[], None]


def _describe(constructor: Any) -> str:
    return getattr(constructor, "__qualname__", None) or repr(constructor)


def _initializes_on_proxy(constructor: Any) -> bool:
    """True when ``constructor`` is a plain class whose ``__init__`` can take a proxy."""
    if not isinstance(constructor, type) or type(constructor).__call__ is not type.__call__:
        return False
    if not isinstance(getattr(constructor, "__init__", None), FunctionType):
        return False
    # Frozen dataclasses and validated models assign through object.__setattr__.
    if constructor.__setattr__ is not object.__setattr__:
        return False
    return all(klass.__module__ != "builtins" for klass in constructor.__mro__[:-1])


def _key_part(value: Any) -> tuple[KeyPart, Any]:
    """Return ``(trie key, anchor)`` for one argument."""
    origin = get_origin(value)
    if is_value(origin):
        try:
            hash(origin)
        except TypeError:
            pass
        else:
            return (type(origin), origin), None
    return (_IDENTITY, id(origin)), origin


def _key_parts(args: tuple[Any, ...], kwargs: dict[str, Any]) -> list[tuple[KeyPart, Any]]:
    parts = [_key_part(arg) for arg in args]
    for name in sorted(kwargs):
        parts.append(((_KEYWORD, name), None))
        parts.append(_key_part(kwargs[name]))
    return parts


class _TrieNode:
    __slots__ = ("parent", "key", "anchor", "children", "entry", "constructing")

    def __init__(self, parent: _TrieNode | None, key: Any, anchor: Any) -> None:
        self.parent = parent
        self.key = key
        self.anchor = anchor
        self.children: dict[Any, _TrieNode] = {}
        self.entry: _CacheEntry | None = None
        self.constructing = False

    @property
    def empty(self) -> bool:
        return not self.children and self.entry is None and not self.constructing


class _CacheEntry:
    __slots__ = (
        "node",
        "ref",
        "finalizer",
        "origin_id",
        "constructor",
        "args",
        "kwargs",
        "callbacks",
        "handle",
        "evicted",
    )

    def __init__(
        self,
        node: _TrieNode,
        ref: weakref.ReferenceType[Any],
        origin_id: int,
        constructor: Any,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> None:
        self.node = node
        self.ref = ref
        self.finalizer: weakref.finalize | None = None
        self.origin_id = origin_id
        self.constructor = constructor
        self.args = args
        self.kwargs = kwargs
        self.callbacks: list[Finalizer] = []
        self.handle: FinalizationHandle | None = None
        self.evicted = False


class FinalizationHandle:
    """One-shot callbacks fired when a cached instance is evicted.

    Obtained through :meth:`InstanceCache.finalization_registry`; every proxy
    of the same origin resolves to the same handle.
    """

    def __init__(self, cache: InstanceCache, entry: _CacheEntry) -> None:
        self._cache = cache
        self._entry = entry

    def register(self, callback: Finalizer) -> FinalizationHandle:
        """Call ``callback()`` once, when the instance is evicted."""
        with self._cache._lock:
            if self._entry.evicted:
                raise UnknownInstanceError(
                    "Instance was already evicted",
                    context=ErrorContext(constructor=_describe(self._entry.constructor)),
                )
            self._entry.callbacks.append(callback)
        return self

    def unregister(self, callback: Finalizer | None = None) -> None:
        """Remove ``callback``, or every registered callback when omitted."""
        with self._cache._lock:
            if callback is None:
                self._entry.callbacks.clear()
            else:
                self._entry.callbacks[:] = [c for c in self._entry.callbacks if c is not callback]

    @property
    def pending(self) -> int:
        """Number of callbacks still waiting for eviction."""
        return len(self._entry.callbacks)

    @property
    def evicted(self) -> bool:
        return self._entry.evicted


class CanonicalFactory:
    """Callable returned by :func:`provide`.

    Attribute access falls through to the wrapped constructor, so class
    attributes and static helpers stay reachable.
    """

    def __init__(self, cache: InstanceCache, constructor: Callable[..., Any]) -> None:
        self._cache = cache
        self.__wrapped__ = constructor
        self.__name__ = getattr(constructor, "__name__", type(constructor).__name__)
        self.__qualname__ = getattr(constructor, "__qualname__", self.__name__)
        self.__doc__ = getattr(constructor, "__doc__", None)

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self._cache.get_or_create(self.__wrapped__, args, kwargs)

    def peek(self, *args: Any, **kwargs: Any) -> Any:
        """Live instance for this key, or ``None``. Never constructs."""
        return self._cache.peek(self.__wrapped__, args, kwargs)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("__"):
            raise AttributeError(name)
        return getattr(self.__wrapped__, name)

    def __repr__(self) -> str:
        return f"<CanonicalFactory {_describe(self.__wrapped__)}>"


class InstanceCache:
    """Trie of weakly-held canonical instances, one subtree per constructor.

    Args:
        engine: Wraps every newly constructed instance
        lock: Shared runtime lock guarding lookup-or-create and eviction
    """

    def __init__(self, engine: ObservationEngine, *, lock: threading.RLock | None = None) -> None:
        self._engine = engine
        self._lock = lock or threading.RLock()
        self._roots: dict[int, _TrieNode] = {}
        self._factories: dict[int, CanonicalFactory] = {}
        self._entries: dict[int, _CacheEntry] = {}
        self._pending: deque[_CacheEntry] = deque()
        self._depth = 0

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def provide(self, constructor: Any) -> CanonicalFactory:
        """Return the canonical factory for ``constructor``. Idempotent."""
        if isinstance(constructor, CanonicalFactory):
            if constructor._cache is self:
                return constructor
            constructor = constructor.__wrapped__
        with self._lock:
            factory = self._factories.get(id(constructor))
            if factory is None:
                factory = CanonicalFactory(self, constructor)
                self._factories[id(constructor)] = factory
            return factory

    def get_or_create(self, constructor: Any, args: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
        """Return the live instance for the key, constructing it at most once."""
        parts = _key_parts(args, kwargs)
        with self._critical():
            node = self._walk(constructor, parts, create=True)
            entry = node.entry
            if entry is not None:
                instance = entry.ref()
                if instance is not None:
                    return instance
                # Reclaimed, finalizer not drained yet: replace it.
                node.entry = None

            if node.constructing:
                raise ReentrantConstructionError(
                    f"{_describe(constructor)} requested its own key while being constructed",
                    context=ErrorContext(constructor=_describe(constructor), key_length=len(parts)),
                )

            node.constructing = True
            try:
                instance = self._construct(constructor, args, kwargs)
                self._store(node, constructor, instance, args, kwargs)
            except BaseException:
                node.constructing = False
                self._prune(node)
                raise
            node.constructing = False

        logger.debug(
            "instance_created",
            constructor=_describe(constructor),
            key_length=len(parts),
        )
        return instance

    def peek(self, constructor: Any, args: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
        """Live instance for the key, or ``None``."""
        with self._lock:
            node = self._walk(constructor, _key_parts(args, kwargs), create=False)
            if node is None or node.entry is None:
                return None
            return node.entry.ref()

    def revoke(self, instance: Any) -> bool:
        """Evict ``instance`` now. Returns False (no-op) for unknown instances."""
        with self._critical():
            entry = self._entry_for(instance)
            if entry is None:
                return False
            callbacks = self._evict(entry, reason="revoked")
        self._run_finalizers(callbacks)
        return True

    def finalization_registry(self, instance: Any) -> FinalizationHandle:
        """Handle for registering one-shot eviction callbacks on ``instance``.

        Raises:
            UnknownInstanceError: ``instance`` is not a live cached instance
        """
        with self._lock:
            entry = self._entry_for(instance)
            if entry is None:
                raise UnknownInstanceError(
                    f"{type(get_origin(instance)).__name__} instance was not provided by this cache",
                    context=ErrorContext(origin_type=type(get_origin(instance)).__name__),
                )
            if entry.handle is None:
                entry.handle = FinalizationHandle(self, entry)
            return entry.handle

    def arguments(self, instance: Any) -> tuple[tuple[Any, ...], dict[str, Any]] | None:
        """Construction arguments of a live cached instance."""
        with self._lock:
            entry = self._entry_for(instance)
            if entry is None:
                return None
            return entry.args, dict(entry.kwargs)

    def collect(self) -> None:
        """Drain evictions queued by the garbage collector."""
        self._drain()

    def live_count(self) -> int:
        with self._lock:
            return sum(1 for entry in list(self._entries.values()) if entry.ref() is not None)

    def clear(self) -> None:
        """Revoke every cached instance (for testing)."""
        callbacks: list[tuple[_CacheEntry, Finalizer]] = []
        with self._critical():
            for entry in list(self._entries.values()):
                callbacks.extend(self._evict(entry, reason="revoked"))
        self._run_finalizers(callbacks)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    @contextmanager
    def _critical(self) -> Iterator[None]:
        self._lock.acquire()
        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1
            self._lock.release()
            self._drain()

    def _walk(self, constructor: Any, parts: list[tuple[KeyPart, Any]], *, create: bool) -> _TrieNode | None:
        node = self._roots.get(id(constructor))
        if node is None:
            if not create:
                return None
            node = _TrieNode(None, id(constructor), constructor)
            self._roots[id(constructor)] = node
        for key, anchor in parts:
            child = node.children.get(key)
            if child is None:
                if not create:
                    return None
                child = _TrieNode(node, key, anchor)
                node.children[key] = child
            node = child
        return node

    def _construct(self, constructor: Any, args: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
        """Build and observe an instance, running a Python ``__init__`` on the proxy.

        Mirrors ``type.__call__`` so that ``self`` inside ``__init__`` (and any
        bound method it stores or schedules) is the observed instance. Other
        constructors are called as-is and their result observed afterwards.
        """
        if not _initializes_on_proxy(constructor):
            return self._engine.observe(constructor(*args, **kwargs))

        raw = constructor.__new__(constructor, *args, **kwargs)
        instance = self._engine.observe(raw)
        if isinstance(raw, constructor):
            type(raw).__init__(instance, *args, **kwargs)
        return instance

    def _store(
        self,
        node: _TrieNode,
        constructor: Any,
        instance: Any,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> _CacheEntry:
        try:
            ref = weakref.ref(instance)
        except TypeError as exc:
            raise UncacheableInstanceError(
                f"{_describe(constructor)} returned a {type(instance).__name__}, "
                "which cannot be weakly referenced",
                context=ErrorContext(constructor=_describe(constructor)),
                cause=exc,
            ) from exc
        entry = _CacheEntry(node, ref, id(get_origin(instance)), constructor, args, dict(kwargs))
        entry.finalizer = weakref.finalize(instance, self._on_reclaimed, entry)
        entry.finalizer.atexit = False
        node.entry = entry
        self._entries[entry.origin_id] = entry
        return entry

    def _entry_for(self, instance: Any) -> _CacheEntry | None:
        origin = get_origin(instance)
        entry = self._entries.get(id(origin))
        if entry is None or entry.evicted:
            return None
        live = entry.ref()
        if live is None or get_origin(live) is not origin:
            return None
        return entry

    def _on_reclaimed(self, entry: _CacheEntry) -> None:
        # May run inside the garbage collector, at any point on any thread.
        self._pending.append(entry)
        self._drain()

    def _drain(self) -> None:
        if not self._pending:
            return
        if not self._lock.acquire(blocking=False):
            # The holder drains when it leaves its critical section.
            return
        callbacks: list[tuple[_CacheEntry, Finalizer]] = []
        try:
            if self._depth:
                return
            while self._pending:
                callbacks.extend(self._evict(self._pending.popleft(), reason="reclaimed"))
        finally:
            self._lock.release()
        self._run_finalizers(callbacks)

    def _evict(self, entry: _CacheEntry, *, reason: str) -> list[tuple[_CacheEntry, Finalizer]]:
        if entry.evicted:
            return []
        entry.evicted = True
        if entry.finalizer is not None:
            entry.finalizer.detach()
        if self._entries.get(entry.origin_id) is entry:
            del self._entries[entry.origin_id]
        if entry.node.entry is entry:
            entry.node.entry = None
        self._prune(entry.node)

        callbacks, entry.callbacks = entry.callbacks, []
        logger.debug(
            "instance_evicted",
            constructor=_describe(entry.constructor),
            reason=reason,
            finalizers=len(callbacks),
        )
        return [(entry, callback) for callback in callbacks]

    def _prune(self, node: _TrieNode) -> None:
        while node.empty:
            parent = node.parent
            if parent is None:
                if self._roots.get(node.key) is node:
                    del self._roots[node.key]
                return
            if parent.children.get(node.key) is node:
                del parent.children[node.key]
            node = parent

    @staticmethod
    def _run_finalizers(callbacks: list[tuple[_CacheEntry, Finalizer]]) -> None:
        for entry, callback in callbacks:
            try:
                callback()
            except Exception as exc:
                logger.warning(
                    "finalization_callback_failed",
                    constructor=_describe(entry.constructor),
                    error=str(exc),
                    exc_info=True,
                )


__all__ = ["CanonicalFactory", "FinalizationHandle", "InstanceCache"]
