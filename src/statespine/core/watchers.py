"""
Watcher registry - per-origin tables of tagged change callbacks.

Each raw object that is observed or watched gets one :class:`WatchEntry`
holding its origin, its proxy, the callbacks subscribed to it and the relays
it has installed on its children. Callbacks are stored under a fresh tag per
registration, so the same function can be registered twice and each
registration is removed on its own.

Lifetime:
    Entries are held weakly by the registry, keyed by ``id(origin)``. An
    entry is kept alive by its proxy (and the proxy by the entry), by the
    relays its children hold back to it, and by the registry itself while it
    carries at least one user watcher. Everything else is a plain reference
    cycle that the garbage collector reclaims once the graph is unreachable.

Tags:
    statespine, watchers, registry, callbacks, weakref

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
import weakref
from collections.abc import Callable
from typing import Any

from statespine.core.origin import get_origin

WatchCallback = Callable[[tuple[Any, ...], Any, Any], None]
Unwatch = Callable[[], None]


class WatchEntry:
    """Bookkeeping for one origin."""

    __slots__ = ("origin", "proxy", "callbacks", "relay_tags", "relays", "user_count", "__weakref__")

    def __init__(self, origin: Any) -> None:
        self.origin = origin
        self.proxy: Any = None
        self.callbacks: dict[object, WatchCallback] = {}
        self.relay_tags: set[object] = set()
        # slot -> (child origin, unwatch for the relay installed on the child)
        self.relays: dict[tuple[str, Any], tuple[Any, Unwatch]] = {}
        self.user_count = 0

    def __repr__(self) -> str:
        return (
            f"WatchEntry({type(self.origin).__name__}, callbacks={len(self.callbacks)}, "
            f"relays={len(self.relays)})"
        )


class WatcherRegistry:
    """Side table from origin identity to :class:`WatchEntry`.

    Example::

        registry = WatcherRegistry()
        unwatch = registry.add(model, lambda path, old, new: print(path))
        for callback in registry.snapshot(registry.entry(model)):
            callback(("value",), 0, 1)
        unwatch()
    """

    def __init__(self, lock: threading.RLock | None = None) -> None:
        self._lock = lock or threading.RLock()
        self._entries: weakref.WeakValueDictionary[int, WatchEntry] = weakref.WeakValueDictionary()
        self._pinned: dict[int, WatchEntry] = {}

    def entry(self, target: Any, *, create: bool = True) -> WatchEntry | None:
        """Return the entry for the origin of ``target``, creating it if asked."""
        origin = get_origin(target)
        with self._lock:
            entry = self._entries.get(id(origin))
            if entry is not None or not create:
                return entry
            entry = WatchEntry(origin)
            self._entries[id(origin)] = entry
            return entry

    def add(self, target: Any, callback: WatchCallback, *, relay: bool = False) -> Unwatch:
        """Register ``callback`` against the origin of ``target``.

        Args:
            target: Raw object or proxy
            callback: Called as ``callback(path, old_value, new_value)``
            relay: Internal parent-forwarding callback. Relays do not keep
                the entry pinned.

        Returns:
            A function removing exactly this registration. Calling it again
            is a no-op.
        """
        with self._lock:
            entry = self.entry(target)
            return self.add_to(entry, callback, relay=relay)

    def add_to(self, entry: WatchEntry, callback: WatchCallback, *, relay: bool = False) -> Unwatch:
        tag = object()
        with self._lock:
            entry.callbacks[tag] = callback
            if relay:
                entry.relay_tags.add(tag)
            else:
                entry.user_count += 1
                self._pinned[id(entry.origin)] = entry

        def unwatch() -> None:
            with self._lock:
                if entry.callbacks.pop(tag, None) is None:
                    return
                if relay:
                    entry.relay_tags.discard(tag)
                else:
                    entry.user_count -= 1
                    if entry.user_count == 0:
                        self._pinned.pop(id(entry.origin), None)

        return unwatch

    def snapshot(self, entry: WatchEntry) -> list[WatchCallback]:
        """Callbacks registered at this moment, safe to call while others (un)register."""
        with self._lock:
            return list(entry.callbacks.values())

    def count(self, target: Any, *, include_relays: bool = False) -> int:
        """Number of callbacks registered against the origin of ``target``."""
        with self._lock:
            entry = self.entry(target, create=False)
            if entry is None:
                return 0
            if include_relays:
                return len(entry.callbacks)
            return entry.user_count

    def __len__(self) -> int:
        """Number of live entries."""
        return len(self._entries)

    def clear(self) -> None:
        """Drop every user watcher and unpin all entries (for testing)."""
        with self._lock:
            for entry in list(self._entries.values()):
                for tag in [t for t in entry.callbacks if t not in entry.relay_tags]:
                    del entry.callbacks[tag]
                entry.user_count = 0
            self._pinned.clear()


__all__ = ["Unwatch", "WatchCallback", "WatchEntry", "WatcherRegistry"]
