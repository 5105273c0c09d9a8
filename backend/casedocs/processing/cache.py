"""
Result Cache — size-bounded LRU with per-entry TTL
═══════════════════════════════════════════════════

Avoids re-running OCR, analysis and chunking for a document+operation pair
that was already processed inside its TTL window. The cache is purely
advisory: a miss costs performance, never correctness.

Keys
────
  f"{document_id}:{operation}:{options_hash}"

  options_hash is a 12-hex-char sha256 prefix of the canonical JSON of the
  options dict (sorted keys, compact separators), or "" when no options
  apply — so two chunking calls with different parameters never collide.

Accounting
──────────
  str                        → len × 2 bytes
  bytes / bytearray          → len
  anything else              → len(json) × 2   (dataclasses / pydantic dumped)
  not JSON-serialisable      → 1 KiB flat

  Before an insert, least-recently-used entries are evicted until the new
  entry fits. An entry that is larger than max_size on its own is refused,
  so resident size never exceeds max_size.

Expiry is lazy: get()/has() drop an expired entry when they see it.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FALLBACK_SIZE = 1024


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass
class CacheEntry(Generic[T]):
    value:            T
    expires_at:       float
    created_at:       float
    size:             int
    access_count:     int = 0
    last_accessed_at: float = 0.0


@dataclass(frozen=True)
class CacheStats:
    hits:       int
    misses:     int
    evictions:  int
    size:       int
    max_size:   int
    item_count: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


@dataclass(frozen=True)
class CacheSettings:
    """Size/TTL for one cache instance; validated on construction."""
    max_size:    int
    default_ttl: float

    def __post_init__(self) -> None:
        if self.max_size <= 0:
            raise ValueError(f"max_size must be positive, got {self.max_size}")
        if self.default_ttl <= 0:
            raise ValueError(f"default_ttl must be positive, got {self.default_ttl}")


# ---------------------------------------------------------------------------
# Size estimation
# ---------------------------------------------------------------------------

def _json_default(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    raise TypeError(f"{type(obj).__name__} is not JSON serialisable")


def estimate_size(value: Any) -> int:
    """Approximate in-memory footprint of a cached value, in bytes."""
    if isinstance(value, str):
        return len(value) * 2
    if isinstance(value, (bytes, bytearray, memoryview)):
        return len(value)
    try:
        return len(json.dumps(value, default=_json_default)) * 2
    except (TypeError, ValueError):
        return _FALLBACK_SIZE


def options_hash(options: dict[str, Any] | None) -> str:
    if not options:
        return ""
    canonical = json.dumps(options, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()[:12]


def make_cache_key(document_id: Any, operation: str, options: dict[str, Any] | None = None) -> str:
    return f"{document_id}:{operation}:{options_hash(options)}"


# ---------------------------------------------------------------------------
# LRU + TTL cache
# ---------------------------------------------------------------------------

class LRUCache(Generic[T]):
    """
    Thread-safe LRU cache with TTL expiry and byte-size accounting.

    Recency is tracked by an OrderedDict: get() and set() move the key to
    the most-recently-used end; eviction pops from the other end. Every
    public method holds the lock for its full duration so the order and the
    size counter are never observed half-updated.
    """

    def __init__(
        self,
        max_size:    int,
        default_ttl: float,
        *,
        name:  str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        CacheSettings(max_size=max_size, default_ttl=default_ttl)
        self.name         = name
        self._max_size    = max_size
        self._default_ttl = default_ttl
        self._clock       = clock
        self._entries: OrderedDict[str, CacheEntry[T]] = OrderedDict()
        self._lock        = threading.Lock()
        self._size        = 0
        self._hits        = 0
        self._misses      = 0
        self._evictions   = 0

    @classmethod
    def from_settings(cls, settings: CacheSettings, **kwargs: Any) -> "LRUCache[T]":
        return cls(settings.max_size, settings.default_ttl, **kwargs)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> T | None:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._misses += 1
                return None
            entry.access_count += 1
            entry.last_accessed_at = self._clock()
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def has(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(self, key: str, value: T, ttl: float | None = None) -> bool:
        """
        Insert or replace an entry. Returns False when the value alone is
        larger than the cache and was therefore not stored.
        """
        size = estimate_size(value)
        now  = self._clock()

        with self._lock:
            if key in self._entries:
                self._remove(key)

            if size > self._max_size:
                logger.warning(
                    "Cache | name=%s key=%s refused size=%d max_size=%d",
                    self.name, key, size, self._max_size,
                )
                return False

            while self._entries and self._size + size > self._max_size:
                oldest, _ = next(iter(self._entries.items()))
                self._remove(oldest)
                self._evictions += 1

            self._entries[key] = CacheEntry(
                value=value,
                expires_at=now + (self._default_ttl if ttl is None else ttl),
                created_at=now,
                size=size,
                last_accessed_at=now,
            )
            self._size += size
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            return True

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                self._remove(key)
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._size = 0

    def get_stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                size=self._size,
                max_size=self._max_size,
                item_count=len(self._entries),
            )

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _live_entry(self, key: str) -> CacheEntry[T] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            self._remove(key)
            return None
        return entry

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._size -= entry.size


# ---------------------------------------------------------------------------
# The three pipeline caches, passed explicitly to whoever needs them
# ---------------------------------------------------------------------------

@dataclass
class PipelineCaches:
    extraction: LRUCache
    analysis:   LRUCache
    chunks:     LRUCache
    _all: tuple[LRUCache, ...] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._all = (self.extraction, self.analysis, self.chunks)

    @classmethod
    def build(
        cls,
        extraction: CacheSettings = CacheSettings(100 * 1024 * 1024, 24 * 60 * 60),
        analysis:   CacheSettings = CacheSettings(50 * 1024 * 1024, 2 * 60 * 60),
        chunks:     CacheSettings = CacheSettings(30 * 1024 * 1024, 60 * 60),
        clock: Callable[[], float] = time.monotonic,
    ) -> "PipelineCaches":
        return cls(
            extraction=LRUCache.from_settings(extraction, name="extraction", clock=clock),
            analysis=LRUCache.from_settings(analysis, name="analysis", clock=clock),
            chunks=LRUCache.from_settings(chunks, name="chunks", clock=clock),
        )

    def invalidate_document(self, document_id: Any) -> int:
        prefix  = f"{document_id}:"
        removed = sum(cache.invalidate_prefix(prefix) for cache in self._all)
        if removed:
            logger.info("Cache | invalidated document=%s entries=%d", document_id, removed)
        return removed

    def stats(self) -> dict[str, CacheStats]:
        return {cache.name: cache.get_stats() for cache in self._all}
