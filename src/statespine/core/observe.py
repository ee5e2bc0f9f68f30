"""
Observation engine - deep, lazy, cycle-safe change tracking.

Wraps a raw object in an :class:`ObservedProxy` that intercepts attribute
and item reads, writes and deletes. Reads lazily wrap nested objects and
install a *relay* on each child that re-broadcasts the child's changes on
the parent with the accessed key prepended. Writes compare old and new
values by origin, store the origin of the new value, move relays and
broadcast ``(path, old_value, new_value)`` to every watcher of the object.

Manifesto:
    Consumers should be able to hand the runtime any plain class instance
    and get notified about every committed mutation reachable from it,
    without decorators, base classes or declared fields.

    - **Transparent:** ``isinstance``, ``vars``, ``==``, ordering, ``len``,
      iteration, ``+=``, ``with`` and method calls behave like the raw object
    - **Lazy:** Children are wrapped only when read through a proxy
    - **Path-qualified:** Watchers learn exactly which leaf changed
    - **Cycle-safe:** One notification per watcher per mutation, even when
      objects reference each other
    - **Quiet on no-ops:** Writing the same origin back never notifies

Architecture:
    ::

        root proxy ──read .child──▶ child proxy ──write .value=2──┐
            ▲                                                      │
            │ relay (("child",) + path)                            ▼
        root watchers ◀── _broadcast(root) ◀── relay ◀── _broadcast(child)
                                                              │
                                                   child watchers

        _dispatch()   one guard set per top-level write (ContextVar)
        _broadcast()  skips an origin already in the guard set

Features:
    - **Method rebinding:** Methods bound to the origin are rebound to the
      proxy and cached, so ``self`` inside a method is observed
    - **Properties:** Getters, setters and deleters run with the proxy as ``self``
    - **Lists and dicts:** Per-index / per-key events for item writes and
      for builtin mutators (``append``, ``pop``, ``update``, ...)
    - **Search fallback:** ``in``, ``index`` and ``count`` on lists retry
      with origin-resolved arguments
    - **Pass-through types:** Value types and types unsafe to proxy
      (futures, sets, weak containers, locks) are returned unwrapped

Examples:
    >>> engine = ObservationEngine(WatcherRegistry())
    >>> state = engine.observe(State())
    >>> unwatch = engine.watch(state, lambda path, old, new: print(path, old, new))
    >>> state.child.value = 2
    ('child', 'value') 1 2
    >>> unwatch()

Guardrails:
    ❌ DON'T: Mutate the raw object directly and expect notifications
    ✅ DO: Mutate through the proxy returned by ``observe``

    ❌ DON'T: Rely on slices of a proxied list being tracked
    ✅ DO: Index into the proxy, or use its mutator methods

Tags:
    statespine, observe, proxy, reactive, change-tracking, watchers

Doc-Types:
    - API Reference
    - Technical Design
"""

from __future__ import annotations

import asyncio
import collections
import collections.abc
import concurrent.futures
import datetime
import io
import numbers
import queue
import threading
import uuid
import weakref
from collections.abc import Callable, Iterator
from contextvars import ContextVar
from enum import Enum
from functools import partial
from pathlib import PurePath
from types import BuiltinMethodType, FunctionType, MethodType, ModuleType
from typing import Any

from statespine.core.errors import ErrorContext, WatcherCallbackError
from statespine.core.logging import get_logger
from statespine.core.origin import OriginRef, get_origin
from statespine.core.settings import RuntimeSettings, get_settings
from statespine.core.watchers import Unwatch, WatchCallback, WatchEntry, WatcherRegistry

logger = get_logger(__name__)

# Absent attribute, key or index. Reported to watchers as None.
_MISSING: Any = object()

# Compared by equality, never wrapped.
VALUE_TYPES: tuple[type, ...] = (
    type(None),
    bool,
    numbers.Number,
    str,
    bytes,
    Enum,
    datetime.date,
    datetime.time,
    datetime.timedelta,
    uuid.UUID,
    PurePath,
)

# Compared by identity, never wrapped: proxying them would break their
# internal state, or they carry no observable state of their own.
UNSAFE_TYPES: tuple[type, ...] = (
    asyncio.Future,
    concurrent.futures.Future,
    set,
    frozenset,
    tuple,
    bytearray,
    memoryview,
    range,
    slice,
    collections.deque,
    weakref.WeakKeyDictionary,
    weakref.WeakValueDictionary,
    weakref.WeakSet,
    weakref.ReferenceType,
    weakref.finalize,
    queue.Queue,
    asyncio.Queue,
    asyncio.Lock,
    asyncio.Event,
    asyncio.Condition,
    asyncio.Semaphore,
    type(threading.Lock()),
    type(threading.RLock()),
    threading.Event,
    threading.Condition,
    threading.Semaphore,
    threading.Barrier,
    io.IOBase,
    collections.abc.Generator,
    collections.abc.AsyncGenerator,
    collections.abc.Coroutine,
    type,
    ModuleType,
    FunctionType,
    BuiltinMethodType,
    MethodType,
    partial,
)

LIST_MUTATORS = frozenset({"append", "extend", "insert", "pop", "remove", "clear", "sort", "reverse"})
DICT_MUTATORS = frozenset({"update", "pop", "popitem", "setdefault", "clear"})
DICT_READERS = frozenset({"get", "values", "items"})
SEARCH_METHODS = frozenset({"index", "count"})

# Cycle guard for the write being dispatched: engine id -> origin ids
# already notified. Replaced, never mutated, when a dispatch starts.
_dispatching: ContextVar[dict[int, set[int]] | None] = ContextVar(
    "statespine_dispatching", default=None
)


def is_value(value: Any) -> bool:
    return isinstance(value, VALUE_TYPES)


def same_value(old: Any, new: Any) -> bool:
    """Origin identity, or equality between value types of the same type."""
    if old is new:
        return True
    if type(old) is type(new) and is_value(old):
        return bool(old == new)
    return False


def _present(value: Any) -> Any:
    return None if value is _MISSING else value


def _is_dunder(name: str) -> bool:
    return name.startswith("__") and name.endswith("__")


def _class_attribute(cls: type, name: str) -> Any:
    for klass in cls.__mro__:
        if name in klass.__dict__:
            return klass.__dict__[name]
    return None


def _builtin_bound_to(value: Any, origin: Any) -> bool:
    return isinstance(value, BuiltinMethodType) and value.__self__ is origin


def _peek_item(origin: Any, key: Any) -> Any:
    if isinstance(origin, list):
        if isinstance(key, int) and 0 <= key < len(origin):
            return origin[key]
        return _MISSING
    if isinstance(origin, collections.abc.Mapping):
        return origin.get(key, _MISSING)
    try:
        return origin[key]
    except (KeyError, IndexError):
        return _MISSING


def _proxy_parts(proxy: ObservedProxy) -> tuple[ObservationEngine, WatchEntry]:
    return (
        object.__getattribute__(proxy, "_engine"),
        object.__getattribute__(proxy, "_entry"),
    )


class ObservedProxy(OriginRef):
    """Stand-in for one raw object. Create through :meth:`ObservationEngine.observe`."""

    __slots__ = ("_engine", "_entry", "_bound", "__weakref__")

    def __init__(self, engine: ObservationEngine, entry: WatchEntry) -> None:
        super().__init__(entry.origin)
        object.__setattr__(self, "_engine", engine)
        object.__setattr__(self, "_entry", entry)
        object.__setattr__(self, "_bound", {})

    def __getattribute__(self, name: str) -> Any:
        return object.__getattribute__(self, "_engine").get_attribute(self, name)

    def __setattr__(self, name: str, value: Any) -> None:
        object.__getattribute__(self, "_engine").set_attribute(self, name, value)

    def __delattr__(self, name: str) -> None:
        object.__getattribute__(self, "_engine").delete_attribute(self, name)

    def __getitem__(self, key: Any) -> Any:
        return object.__getattribute__(self, "_engine").get_item(self, key)

    def __setitem__(self, key: Any, value: Any) -> None:
        object.__getattribute__(self, "_engine").set_item(self, key, value)

    def __delitem__(self, key: Any) -> None:
        object.__getattribute__(self, "_engine").delete_item(self, key)

    def __iter__(self) -> Iterator[Any]:
        return object.__getattribute__(self, "_engine").iterate(self)

    def __contains__(self, value: Any) -> bool:
        return object.__getattribute__(self, "_engine").contains(self, value)

    def __iadd__(self, other: Any) -> Any:
        return object.__getattribute__(self, "_engine").inplace_add(self, other)

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return object.__getattribute__(self, "_engine").call(self, args, kwargs)

    def __lt__(self, other: Any) -> Any:
        return object.__getattribute__(self, "_engine").special(self, "__lt__", other)

    def __le__(self, other: Any) -> Any:
        return object.__getattribute__(self, "_engine").special(self, "__le__", other)

    def __gt__(self, other: Any) -> Any:
        return object.__getattribute__(self, "_engine").special(self, "__gt__", other)

    def __ge__(self, other: Any) -> Any:
        return object.__getattribute__(self, "_engine").special(self, "__ge__", other)

    def __enter__(self) -> Any:
        return object.__getattribute__(self, "_engine").context(self, "__enter__")

    def __exit__(self, *exc_info: Any) -> Any:
        return object.__getattribute__(self, "_engine").context(self, "__exit__", *exc_info)

    def __len__(self) -> int:
        return len(get_origin(self))

    def __bool__(self) -> bool:
        return bool(get_origin(self))

    def __eq__(self, other: Any) -> bool:
        return get_origin(self) == get_origin(other)

    def __ne__(self, other: Any) -> bool:
        return get_origin(self) != get_origin(other)

    def __hash__(self) -> int:
        return hash(get_origin(self))

    def __repr__(self) -> str:
        return repr(get_origin(self))

    def __str__(self) -> str:
        return str(get_origin(self))


class ObservationEngine:
    """Creates proxies and dispatches their changes through a :class:`WatcherRegistry`.

    Args:
        registry: Where callbacks and relays are stored
        lock: Shared with the registry and the instance cache
        settings: Dispatch behaviour (tracing, callback error policy)
    """

    def __init__(
        self,
        registry: WatcherRegistry | None = None,
        *,
        lock: threading.RLock | None = None,
        settings: RuntimeSettings | None = None,
    ) -> None:
        self._lock = lock or threading.RLock()
        self._registry = registry or WatcherRegistry(self._lock)
        self._settings = settings or get_settings()
        self._passthrough: tuple[type, ...] = VALUE_TYPES + UNSAFE_TYPES

    @property
    def registry(self) -> WatcherRegistry:
        return self._registry

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def register_unsafe_type(self, cls: type) -> None:
        """Never wrap instances of ``cls`` (and its subclasses)."""
        if cls not in self._passthrough:
            self._passthrough = self._passthrough + (cls,)

    def is_observable(self, value: Any) -> bool:
        """True for values :meth:`observe` would wrap."""
        return value is not _MISSING and not isinstance(value, self._passthrough)

    def observe(self, target: Any) -> Any:
        """Return the proxy for the origin of ``target``, or the value itself if unwrappable."""
        origin = get_origin(target)
        if not self.is_observable(origin):
            return origin
        with self._lock:
            entry = self._registry.entry(origin)
            if entry.proxy is None:
                entry.proxy = ObservedProxy(self, entry)
            return entry.proxy

    def watch(self, target: Any, callback: WatchCallback) -> Unwatch:
        """Subscribe ``callback(path, old_value, new_value)`` to changes under ``target``."""
        if not self.is_observable(get_origin(target)):
            return _noop
        return self._registry.add(target, callback)

    def watcher_count(self, target: Any) -> int:
        return self._registry.count(target)

    # ------------------------------------------------------------------ #
    # Attribute interception
    # ------------------------------------------------------------------ #

    def get_attribute(self, proxy: ObservedProxy, name: str) -> Any:
        origin = get_origin(proxy)
        if _is_dunder(name):
            return getattr(origin, name)

        bound: dict[str, Any] = object.__getattribute__(proxy, "_bound")
        cached = bound.get(name, _MISSING)
        if cached is not _MISSING:
            return cached

        descriptor = _class_attribute(type(origin), name)
        if isinstance(descriptor, property):
            value = descriptor.__get__(proxy, type(origin))
        else:
            value = getattr(origin, name)
            if isinstance(value, MethodType) and value.__self__ is origin:
                method = MethodType(value.__func__, proxy)
                bound[name] = method
                return method
            wrapper = self._container_method(proxy, origin, name, value)
            if wrapper is not None:
                bound[name] = wrapper
                return wrapper
        return self._track_child(proxy, ("attr", name), name, value)

    def set_attribute(self, proxy: ObservedProxy, name: str, value: Any) -> None:
        origin = get_origin(proxy)
        if _is_dunder(name):
            setattr(origin, name, value)
            return

        descriptor = _class_attribute(type(origin), name)
        if isinstance(descriptor, property):
            descriptor.__set__(proxy, value)
            return

        new = get_origin(value)
        old = get_origin(getattr(origin, name, _MISSING))
        if same_value(old, new):
            return
        setattr(origin, name, new)
        self._commit(proxy, ("attr", name), name, old, new)

    def delete_attribute(self, proxy: ObservedProxy, name: str) -> None:
        origin = get_origin(proxy)
        if _is_dunder(name):
            delattr(origin, name)
            return

        descriptor = _class_attribute(type(origin), name)
        if isinstance(descriptor, property):
            descriptor.__delete__(proxy)
            return

        old = get_origin(getattr(origin, name, _MISSING))
        delattr(origin, name)
        self._commit(proxy, ("attr", name), name, old, _MISSING)

    # ------------------------------------------------------------------ #
    # Item interception
    # ------------------------------------------------------------------ #

    def get_item(self, proxy: ObservedProxy, key: Any) -> Any:
        origin = get_origin(proxy)
        if isinstance(key, slice):
            return origin[key]
        key = self._normalize_index(origin, key)
        return self._track_child(proxy, ("item", key), key, origin[key])

    def set_item(self, proxy: ObservedProxy, key: Any, value: Any) -> None:
        origin = get_origin(proxy)
        if isinstance(origin, list) and isinstance(key, slice):
            self._mutate(proxy, origin.__setitem__, key, [get_origin(v) for v in value])
            return

        key = self._normalize_index(origin, key)
        new = get_origin(value)
        old = get_origin(_peek_item(origin, key))
        if same_value(old, new):
            return
        origin[key] = new
        self._commit(proxy, ("item", key), key, old, new)

    def delete_item(self, proxy: ObservedProxy, key: Any) -> None:
        origin = get_origin(proxy)
        if isinstance(origin, list):
            # Deleting shifts every later index.
            self._mutate(proxy, origin.__delitem__, key)
            return

        old = get_origin(_peek_item(origin, key))
        del origin[key]
        self._commit(proxy, ("item", key), key, old, _MISSING)

    def iterate(self, proxy: ObservedProxy) -> Iterator[Any]:
        origin = get_origin(proxy)
        if isinstance(origin, list):
            return self._iterate_list(proxy, origin)
        method = _class_attribute(type(origin), "__iter__")
        if isinstance(method, FunctionType):
            return method(proxy)
        return iter(origin)

    def contains(self, proxy: ObservedProxy, value: Any) -> bool:
        origin = get_origin(proxy)
        if value in origin:
            return True
        if isinstance(origin, list):
            return get_origin(value) in origin
        return False

    def inplace_add(self, proxy: ObservedProxy, other: Any) -> Any:
        origin = get_origin(proxy)
        if isinstance(origin, list):
            self._mutate(proxy, origin.extend, [get_origin(v) for v in other])
            return proxy
        if _class_attribute(type(origin), "__iadd__") is not None:
            return self.special(proxy, "__iadd__", other)
        # Same fallback as the interpreter: x += y becomes x = x + y.
        return self.special(proxy, "__add__", other)

    def special(self, proxy: ObservedProxy, name: str, *args: Any) -> Any:
        """Run the origin's ``name`` special method.

        Methods written in Python run with the proxy as ``self`` so writes made
        inside them notify. Builtin slots run on the origin with unwrapped
        arguments. Missing methods return ``NotImplemented``.
        """
        origin = get_origin(proxy)
        method = _class_attribute(type(origin), name)
        if method is None:
            return NotImplemented
        if isinstance(method, FunctionType):
            return method(proxy, *args)
        return getattr(origin, name)(*(get_origin(arg) for arg in args))

    def context(self, proxy: ObservedProxy, name: str, *args: Any) -> Any:
        """``__enter__`` / ``__exit__``, failing like ``with`` on the raw object would."""
        origin = get_origin(proxy)
        if _class_attribute(type(origin), name) is None:
            raise TypeError(
                f"'{type(origin).__name__}' object does not support the context manager protocol"
            )
        return self.special(proxy, name, *args)

    def call(self, proxy: ObservedProxy, args: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
        origin = get_origin(proxy)
        method = _class_attribute(type(origin), "__call__")
        if method is None:
            raise TypeError(f"'{type(origin).__name__}' object is not callable")
        if isinstance(method, FunctionType):
            return method(proxy, *args, **kwargs)
        return origin(*args, **kwargs)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    @staticmethod
    def _normalize_index(origin: Any, key: Any) -> Any:
        if isinstance(origin, list) and isinstance(key, int) and not isinstance(key, bool):
            if key < 0 and key + len(origin) >= 0:
                return key + len(origin)
        return key

    def _iterate_list(self, proxy: ObservedProxy, origin: list[Any]) -> Iterator[Any]:
        index = 0
        while index < len(origin):
            yield self.get_item(proxy, index)
            index += 1

    def _track_child(self, proxy: ObservedProxy, slot: tuple[str, Any], key: Any, value: Any) -> Any:
        """Wrap an object-valued read and make sure its relay points at it."""
        child = get_origin(value)
        if not self.is_observable(child):
            return child
        _, entry = _proxy_parts(proxy)
        with self._lock:
            relay = entry.relays.get(slot)
            if relay is None or relay[0] is not child:
                if relay is not None:
                    relay[1]()
                entry.relays[slot] = (child, self._registry.add(child, self._relay(entry, key), relay=True))
            return self.observe(child)

    def _relay(self, parent: WatchEntry, key: Any) -> WatchCallback:
        def relay(path: tuple[Any, ...], old: Any, new: Any) -> None:
            self._broadcast(parent, (key, *path), old, new)

        return relay

    def _commit(self, proxy: ObservedProxy, slot: tuple[str, Any], key: Any, old: Any, new: Any) -> None:
        """Move the relay for ``slot`` to ``new`` and notify."""
        _, entry = _proxy_parts(proxy)
        with self._lock:
            relay = entry.relays.pop(slot, None)
            if relay is not None:
                relay[1]()
            if self.is_observable(new):
                entry.relays[slot] = (new, self._registry.add(new, self._relay(entry, key), relay=True))
        if slot[0] == "attr":
            object.__getattribute__(proxy, "_bound").pop(key, None)
        self._dispatch(entry, (key,), _present(old), _present(new))

    def _mutate(self, proxy: ObservedProxy, method: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a builtin container mutator, then commit every position that changed."""
        origin = get_origin(proxy)
        if isinstance(origin, list):
            before: Any = list(origin)
        else:
            before = dict(origin)
        try:
            return method(*args, **kwargs)
        finally:
            for key, old, new in self._changes(before, origin):
                self._commit(proxy, ("item", key), key, old, new)

    @staticmethod
    def _changes(before: Any, after: Any) -> list[tuple[Any, Any, Any]]:
        changes = []
        if isinstance(before, list):
            for index in range(max(len(before), len(after))):
                old = before[index] if index < len(before) else _MISSING
                new = after[index] if index < len(after) else _MISSING
                if not same_value(old, new):
                    changes.append((index, old, new))
            return changes
        keys = list(before) + [key for key in after if key not in before]
        for key in keys:
            old = before.get(key, _MISSING)
            new = after.get(key, _MISSING)
            if not same_value(old, new):
                changes.append((key, old, new))
        return changes

    def _container_method(self, proxy: ObservedProxy, origin: Any, name: str, value: Any) -> Any:
        """Tracked replacements for builtin list/dict methods, or None."""
        if not _builtin_bound_to(value, origin):
            return None
        if isinstance(origin, list):
            if name in LIST_MUTATORS:
                return self._list_mutator(proxy, value, name)
            if name in SEARCH_METHODS:
                return self._search_method(origin, value, name)
        elif isinstance(origin, dict):
            if name in DICT_MUTATORS:
                return self._dict_mutator(proxy, value, name)
            if name in DICT_READERS:
                return self._dict_reader(proxy, origin, name)
        return None

    def _list_mutator(self, proxy: ObservedProxy, method: Callable[..., Any], name: str) -> Callable[..., Any]:
        def mutator(*args: Any, **kwargs: Any) -> Any:
            if name == "extend" and args:
                args = ([get_origin(v) for v in args[0]],)
            else:
                args = tuple(get_origin(a) for a in args)
            return self._mutate(proxy, method, *args, **kwargs)

        mutator.__name__ = name
        return mutator

    def _dict_mutator(self, proxy: ObservedProxy, method: Callable[..., Any], name: str) -> Callable[..., Any]:
        def mutator(*args: Any, **kwargs: Any) -> Any:
            if name == "update":
                items = dict(*args, **kwargs)
                return self._mutate(proxy, method, {k: get_origin(v) for k, v in items.items()})
            result = self._mutate(proxy, method, *(get_origin(a) for a in args), **kwargs)
            if name == "setdefault":
                return self.get_item(proxy, args[0])
            return result

        mutator.__name__ = name
        return mutator

    def _dict_reader(self, proxy: ObservedProxy, origin: dict[Any, Any], name: str) -> Callable[..., Any]:
        if name == "get":

            def get(key: Any, default: Any = None) -> Any:
                if key in origin:
                    return self.get_item(proxy, key)
                return default

            return get
        if name == "values":
            return lambda: [self.get_item(proxy, key) for key in list(origin)]
        return lambda: [(key, self.get_item(proxy, key)) for key in list(origin)]

    @staticmethod
    def _search_method(origin: list[Any], method: Callable[..., Any], name: str) -> Callable[..., Any]:
        # Elements are searched as given first, then by origin.
        if name == "index":

            def index(value: Any, *bounds: Any) -> int:
                try:
                    return method(value, *bounds)
                except ValueError:
                    return method(get_origin(value), *bounds)

            return index

        def count(value: Any) -> int:
            return method(value) or method(get_origin(value))

        return count

    def _dispatch(self, entry: WatchEntry, path: tuple[Any, ...], old: Any, new: Any) -> None:
        """Top-level broadcast for one write, under a fresh cycle guard."""
        guards = dict(_dispatching.get() or {})
        guards[id(self)] = set()
        token = _dispatching.set(guards)
        try:
            self._broadcast(entry, path, old, new)
        finally:
            _dispatching.reset(token)

    def _broadcast(self, entry: WatchEntry, path: tuple[Any, ...], old: Any, new: Any) -> None:
        active = (_dispatching.get() or {}).get(id(self))
        marker = id(entry.origin)
        if active is not None:
            if marker in active:
                return
            active.add(marker)

        callbacks = self._registry.snapshot(entry)
        if not callbacks:
            return
        if self._settings.trace_notifications:
            logger.debug(
                "change_broadcast",
                origin_type=type(entry.origin).__name__,
                path=path,
                callbacks=len(callbacks),
            )

        failure: BaseException | None = None
        for callback in callbacks:
            try:
                callback(path, old, new)
            except WatcherCallbackError as exc:
                # Already logged where it was raised.
                failure = failure or exc
            except Exception as exc:
                logger.warning(
                    "watcher_callback_failed",
                    origin_type=type(entry.origin).__name__,
                    path=path,
                    error=str(exc),
                    exc_info=True,
                )
                failure = failure or exc

        if failure is not None and self._settings.raise_callback_errors:
            if isinstance(failure, WatcherCallbackError):
                raise failure
            raise WatcherCallbackError(
                f"Watcher callback failed for change at {path!r}",
                context=ErrorContext(origin_type=type(entry.origin).__name__, path=path),
                cause=failure,
            ) from failure


def _noop() -> None:
    return None


__all__ = [
    "DICT_MUTATORS",
    "LIST_MUTATORS",
    "ObservationEngine",
    "ObservedProxy",
    "UNSAFE_TYPES",
    "VALUE_TYPES",
    "is_value",
    "same_value",
]
