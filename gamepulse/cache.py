from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import asdict, dataclass, field, is_dataclass
from typing import Any, Callable, Hashable

logger = logging.getLogger(__name__)


def make_cache_key(name: str, filters: Any = None) -> tuple[str, str]:
    """Build a hashable key from a report name and its filter object."""

    if filters is None:
        payload: Any = {}
    elif is_dataclass(filters):
        payload = asdict(filters)
    else:
        payload = filters
    if isinstance(payload, dict):
        payload = {key: value for key, value in payload.items() if value not in (None, [], ())}
    return name, json.dumps(payload, sort_keys=True, default=str)


@dataclass
class CacheEntry:
    data: Any = None
    fetched_at: float | None = None
    in_flight: Future | None = None
    last_used: float = field(default_factory=time.monotonic)

    @property
    def has_data(self) -> bool:
        return self.fetched_at is not None


class QueryCache:
    """Keyed result cache with staleness windows and shared in-flight loads.

    ``fetch`` returns cached data while it is younger than ``stale_after``
    seconds. Otherwise it runs the loader; concurrent callers asking for the
    same key wait on that single load instead of starting their own. Failed
    loads are not cached and propagate to every waiting caller. Entries not
    used for ``gc_after`` seconds are dropped on the next access.
    """

    def __init__(
        self,
        stale_after: float = 300.0,
        gc_after: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stale_after = max(0.0, float(stale_after))
        self.gc_after = max(0.0, float(gc_after))
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[Hashable, CacheEntry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _is_fresh(self, entry: CacheEntry, stale_after: float, now: float) -> bool:
        return entry.has_data and (now - entry.fetched_at) < stale_after

    def _collect_garbage(self, now: float) -> None:
        if not self.gc_after:
            return
        expired = [
            key
            for key, entry in self._entries.items()
            if entry.in_flight is None and now - entry.last_used >= self.gc_after
        ]
        for key in expired:
            del self._entries[key]

    def fetch(
        self,
        key: Hashable,
        loader: Callable[[], Any],
        stale_after: float | None = None,
    ) -> Any:
        window = self.stale_after if stale_after is None else max(0.0, float(stale_after))

        with self._lock:
            now = self._clock()
            self._collect_garbage(now)
            entry = self._entries.setdefault(key, CacheEntry(last_used=now))
            entry.last_used = now

            if self._is_fresh(entry, window, now):
                return entry.data

            if entry.in_flight is not None:
                future = entry.in_flight
                owner = False
            else:
                future = Future()
                entry.in_flight = future
                owner = True

        if not owner:
            return future.result()
        return self._load(entry, future, loader)

    def _load(
        self,
        entry: CacheEntry,
        future: Future,
        loader: Callable[[], Any],
    ) -> Any:
        try:
            data = loader()
        except Exception as error:
            with self._lock:
                if entry.in_flight is future:
                    entry.in_flight = None
            future.set_exception(error)
            raise

        with self._lock:
            entry.data = data
            entry.fetched_at = self._clock()
            if entry.in_flight is future:
                entry.in_flight = None
        future.set_result(data)
        return data

    def refetch(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        """Force a load for ``key`` regardless of freshness."""

        return self.fetch(key, loader, stale_after=0)

    def peek(self, key: Hashable) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            return entry.data if entry is not None and entry.has_data else None

    def invalidate(self, prefix: str | None = None) -> int:
        """Drop cached data for every key, or for keys whose name matches ``prefix``.

        Keys are either plain strings or tuples whose first item is the report
        name. Loads already in flight still answer their callers but are not
        stored.
        """

        with self._lock:
            if prefix is None:
                removed = len(self._entries)
                self._entries.clear()
            else:
                doomed = [key for key in self._entries if _key_name(key) == prefix]
                for key in doomed:
                    del self._entries[key]
                removed = len(doomed)

        logger.info("Invalidated %s cached report(s) for %s", removed, prefix or "all keys")
        return removed


def _key_name(key: Hashable) -> Any:
    if isinstance(key, tuple) and key:
        return key[0]
    return key
