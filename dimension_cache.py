"""
Value -> surrogate key caches for dimension lookups.

Three policies:
  unbounded  - plain dict, for small enumerable dimensions
  watermark  - LRU that, once it grows past high_watermark, evicts the least
               recently used entries until it is back down to low_watermark
  none       - never holds anything, every lookup goes to the warehouse

The warehouse stays the source of truth, so eviction only costs round-trips.
"""
import enum
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Hashable, Iterable, List, Optional


class CachePolicy(enum.Enum):
    UNBOUNDED = "unbounded"
    WATERMARK = "watermark"
    NONE = "none"


@dataclass(frozen=True)
class CacheSpec:
    policy: CachePolicy = CachePolicy.NONE
    high_watermark: int = 0
    low_watermark: int = 0

    def __post_init__(self):
        if self.policy is CachePolicy.WATERMARK and not (
            0 <= self.low_watermark < self.high_watermark
        ):
            raise ValueError(
                f"Watermark cache needs 0 <= low < high, got low={self.low_watermark} high={self.high_watermark}"
            )


UNBOUNDED = CacheSpec(CachePolicy.UNBOUNDED)
NO_CACHE = CacheSpec(CachePolicy.NONE)


def watermark(high: int, low: int) -> CacheSpec:
    return CacheSpec(CachePolicy.WATERMARK, high_watermark=high, low_watermark=low)


class DimensionCache:
    """Common interface and hit/miss accounting."""

    policy = CachePolicy.NONE

    def __init__(self):
        self.hits = 0
        self.misses = 0
        self.purges = 0

    def get(self, value: Hashable) -> Optional[Any]:
        key = self._lookup(value)
        if key is None:
            self.misses += 1
        else:
            self.hits += 1
        return key

    def set(self, value: Hashable, key: Any) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def _lookup(self, value):
        raise NotImplementedError

    def __len__(self) -> int:
        return 0


class UnboundedCache(DimensionCache):
    policy = CachePolicy.UNBOUNDED

    def __init__(self):
        super().__init__()
        self._entries: Dict[Hashable, Any] = {}

    def _lookup(self, value):
        return self._entries.get(value)

    def set(self, value, key):
        self._entries[value] = key

    def clear(self):
        self._entries.clear()

    def __len__(self):
        return len(self._entries)


class WatermarkCache(DimensionCache):
    policy = CachePolicy.WATERMARK

    def __init__(self, high_watermark: int, low_watermark: int):
        super().__init__()
        self.high_watermark = high_watermark
        self.low_watermark = low_watermark
        # Insertion order doubles as recency order; oldest first
        self._entries: "OrderedDict[Hashable, Any]" = OrderedDict()

    def _lookup(self, value):
        key = self._entries.get(value)
        if key is not None:
            self._entries.move_to_end(value)
        return key

    def set(self, value, key):
        self._entries[value] = key
        self._entries.move_to_end(value)
        if len(self._entries) > self.high_watermark:
            self._purge()

    def _purge(self):
        while len(self._entries) > self.low_watermark:
            self._entries.popitem(last=False)
        self.purges += 1

    def clear(self):
        self._entries.clear()

    def __len__(self):
        return len(self._entries)


class NullCache(DimensionCache):
    policy = CachePolicy.NONE

    def _lookup(self, value):
        return None

    def set(self, value, key):
        pass

    def clear(self):
        pass


def make_cache(spec: CacheSpec) -> DimensionCache:
    if spec.policy is CachePolicy.UNBOUNDED:
        return UnboundedCache()
    if spec.policy is CachePolicy.WATERMARK:
        return WatermarkCache(spec.high_watermark, spec.low_watermark)
    return NullCache()


class CacheRegistry:
    """
    The per-run set of dimension caches, built once and injected into every
    resolver. Date-scoped caches are emptied whenever the input date moves on.
    """

    def __init__(self, specs: Dict[str, CacheSpec], date_scoped: Iterable[str] = ()):
        self._caches: Dict[str, DimensionCache] = {
            name: make_cache(spec) for name, spec in specs.items()
        }
        self.date_scoped = frozenset(date_scoped)
        self.current_date: Optional[str] = None

    def cache(self, name: str) -> DimensionCache:
        """Return the cache for name, creating an uncached slot for unknown names."""
        if name not in self._caches:
            self._caches[name] = NullCache()
        return self._caches[name]

    def advance_date(self, date: str) -> bool:
        """Record the date being processed; returns True if date-scoped caches were cleared."""
        changed = self.current_date is not None and date != self.current_date
        if changed:
            for name in self.date_scoped:
                if name in self._caches:
                    self._caches[name].clear()
        self.current_date = date
        return changed

    def clear_all(self) -> None:
        for cache in self._caches.values():
            cache.clear()

    def report(self) -> List[Dict[str, Any]]:
        return [
            {
                "dimension": name,
                "policy": cache.policy.value,
                "cached": len(cache),
                "hits": cache.hits,
                "misses": cache.misses,
                "purges": cache.purges,
            }
            for name, cache in sorted(self._caches.items())
        ]
