"""In-process query result cache with LRU eviction and per-entry TTL.

Keys are derived from the call parameters: they are serialized with sorted
keys and hashed, so the same logical parameters always land on the same
entry regardless of dict ordering. TTLs are in seconds.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Generic,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

KEY_LENGTH = 16


@dataclass
class CacheEntry(Generic[T]):
    data: T
    timestamp: float
    ttl: float
    access_count: int = 1
    last_accessed: float = 0.0
    params: Dict[str, Any] = field(default_factory=dict)
    params_json: str = ""
    source_ids: FrozenSet[str] = field(default_factory=frozenset)

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


@dataclass(frozen=True)
class CacheStats:
    hits: int = 0
    misses: int = 0
    size: int = 0
    hit_rate: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {"hits": self.hits, "misses": self.misses, "size": self.size, "hit_rate": self.hit_rate}


def _serialize(params: Mapping[str, Any]) -> str:
    return json.dumps(params, sort_keys=True, default=_json_default, separators=(",", ":"))


def _json_default(value: Any):
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return str(value)


def make_key(params: Mapping[str, Any]) -> str:
    return hashlib.sha256(_serialize(params).encode("utf-8")).hexdigest()[:KEY_LENGTH]


class QueryCache(Generic[T]):
    """Bounded memoization store.

    ``get`` treats expired entries as misses and drops them, so the periodic
    sweep only reclaims memory early. The sweep runs on a daemon thread and is
    stopped by ``destroy``.
    """

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl: float = 300.0,
        cleanup_interval: Optional[float] = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = int(max_size)
        self.default_ttl = float(default_ttl)
        self.cleanup_interval = cleanup_interval
        self._clock = clock

        self._lock = threading.RLock()
        self._entries: "OrderedDict[str, CacheEntry[T]]" = OrderedDict()
        self._hits = 0
        self._misses = 0

        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        if cleanup_interval:
            self._start_sweeper(float(cleanup_interval))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get(self, params: Mapping[str, Any]) -> Optional[T]:
        key = make_key(params)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            now = self._clock()
            if entry.is_expired(now):
                del self._entries[key]
                self._misses += 1
                return None
            entry.access_count += 1
            entry.last_accessed = now
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.data

    def set(
        self,
        params: Mapping[str, Any],
        data: T,
        ttl: Optional[float] = None,
        source_ids: Optional[Iterable[str]] = None,
    ) -> None:
        serialized = _serialize(params)
        key = hashlib.sha256(serialized.encode("utf-8")).hexdigest()[:KEY_LENGTH]
        with self._lock:
            now = self._clock()
            if key in self._entries:
                del self._entries[key]
            while len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted least recently used cache entry %s", evicted)
            self._entries[key] = CacheEntry(
                data=data,
                timestamp=now,
                ttl=self.default_ttl if ttl is None else float(ttl),
                access_count=1,
                last_accessed=now,
                params=dict(params),
                params_json=serialized,
                source_ids=frozenset(str(i) for i in (source_ids or ())),
            )

    def invalidate(self, predicate: Optional[Callable[[Dict[str, Any]], bool]] = None) -> int:
        """Drop entries whose stored params satisfy ``predicate`` (all when None)."""
        with self._lock:
            if predicate is None:
                count = len(self._entries)
                self._entries.clear()
                return count
            doomed = []
            for key, entry in self._entries.items():
                try:
                    if predicate(entry.params):
                        doomed.append(key)
                except Exception as exc:
                    logger.warning("Invalidation predicate failed for %s: %s", key, exc)
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def invalidate_by_ids(self, ids: Iterable[str]) -> int:
        """Drop entries built from any of ``ids``.

        Entries record the ids they were built from; entries stored without
        ids are matched by substring against their serialized params.
        """
        wanted = {str(i) for i in ids if i}
        if not wanted:
            return 0
        with self._lock:
            doomed = []
            for key, entry in self._entries.items():
                if entry.source_ids:
                    if entry.source_ids & wanted:
                        doomed.append(key)
                elif any(i in entry.params_json for i in wanted):
                    doomed.append(key)
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def get_stats(self) -> CacheStats:
        with self._lock:
            total = self._hits + self._misses
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                size=len(self._entries),
                hit_rate=(self._hits / total) if total else 0.0,
            )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def warm(
        self,
        patterns: Iterable[Tuple[Mapping[str, Any], Callable[[], Any]]],
        with_source_ids: bool = False,
    ) -> int:
        """Populate entries from ``(params, generator)`` pairs.

        With ``with_source_ids`` each generator returns ``(data, source_ids)``
        so warmed entries can be invalidated by id like any other entry.
        A failing generator is logged and skipped; the rest still run.
        Returns the number of entries stored.
        """
        stored = 0
        for params, generator in patterns:
            try:
                produced = generator()
            except Exception as exc:
                logger.warning("Cache warming failed for %s: %s", dict(params), exc)
                continue
            if with_source_ids:
                data, source_ids = produced
                self.set(params, data, source_ids=source_ids)
            else:
                self.set(params, produced)
            stored += 1
        return stored

    def cleanup(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def destroy(self) -> None:
        """Stop the sweep thread and drop all entries."""
        self._stop.set()
        sweeper = self._sweeper
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join(timeout=1.0)
        self._sweeper = None
        self.clear()

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, params: Mapping[str, Any]) -> bool:
        key = make_key(params)
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _start_sweeper(self, interval: float) -> None:
        def run():
            while not self._stop.wait(interval):
                try:
                    removed = self.cleanup()
                    if removed:
                        logger.debug("Cache sweep removed %d expired entries", removed)
                except Exception:
                    logger.exception("Cache sweep failed")

        self._sweeper = threading.Thread(target=run, name="query-cache-sweeper", daemon=True)
        self._sweeper.start()
