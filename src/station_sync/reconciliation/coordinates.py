"""
Coordinate reconciliation.

Chooses one representative coordinate for a station group out of the
coordinates its members already carry, and falls back to the geocoder (with
an in-process cache) when a station has none.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

from ..utils.errors import SourceUnavailableError
from .base import GeocodeSource, RateLimiter
from .models import (
    CoordinateCandidate,
    CoordinateCluster,
    CoordinateResult,
    CoordinateStatistics,
    RawStationObservation,
    ReconciliationConfig,
    ResolutionStatus,
    SourceClass,
    SourceTag,
    is_coordinate_empty,
    is_coordinate_valid,
)
from .normalizers import StationNameResolver, UNCLASSIFIED_REGION
from .throttling import CancellationToken, SourceRateLimiter


logger = logging.getLogger(__name__)

GEOCODER_CONFIDENCE = 70
MANUAL_CONFIDENCE = 90

__all__ = [
    "CoordinateCache",
    "CoordinateReconciler",
    "is_coordinate_empty",
    "is_coordinate_valid",
]


@dataclass(frozen=True)
class _CacheEntry:
    result: CoordinateResult
    cached_at: float


class CoordinateCache:
    """
    Thread-safe TTL cache of resolved coordinates keyed by name + region.

    Expired entries are dropped lazily when looked up. When full, the oldest
    entry is evicted.
    """

    def __init__(
        self,
        ttl_s: float = 7 * 24 * 3600,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.ttl_s = ttl_s
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, _CacheEntry]" = OrderedDict()
        self.lock = threading.Lock()

    @staticmethod
    def make_key(name: str, region: Optional[str]) -> str:
        return f"{name}_{region or ''}"

    def get(self, key: str) -> Optional[CoordinateResult]:
        with self.lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.cached_at > self.ttl_s:
                del self._entries[key]
                return None
            return entry.result

    def put(self, key: str, result: CoordinateResult) -> None:
        with self.lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
            self._entries[key] = _CacheEntry(result=result, cached_at=self._clock())

    def clear(self) -> None:
        with self.lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self.lock:
            return len(self._entries)


class CoordinateReconciler:
    """
    Resolves representative coordinates for station groups.

    Known member coordinates are clustered around seeds 200 m apart; the
    cluster with the highest summed source priority wins and its
    highest-priority member becomes the representative.
    """

    def __init__(
        self,
        resolver: StationNameResolver,
        geocoder: Optional[GeocodeSource] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cache: Optional[CoordinateCache] = None,
        config: Optional[ReconciliationConfig] = None,
    ):
        self.config = config or ReconciliationConfig()
        self.resolver = resolver
        self.geocoder = geocoder
        self.rate_limiter = rate_limiter or SourceRateLimiter(self.config.intervals())
        self.cache = cache or CoordinateCache(
            ttl_s=self.config.cache_ttl_s,
            max_entries=self.config.cache_max_entries,
        )

    def _cluster(self, candidates: Sequence[CoordinateCandidate]) -> List[CoordinateCluster]:
        clusters: List[CoordinateCluster] = []
        for candidate in candidates:
            for cluster in clusters:
                seed = cluster.seed
                if self.resolver.is_same_station_group(seed.lat, seed.lon, candidate.lat, candidate.lon):
                    cluster.add(candidate)
                    break
            else:
                clusters.append(CoordinateCluster([candidate]))
        return clusters

    def determine_group_coordinate(self, candidates: Iterable[CoordinateCandidate]) -> CoordinateResult:
        """
        Pick one coordinate out of a group's known coordinates.

        Args:
            candidates: Member coordinates in observation order

        Returns:
            CoordinateResult with status OK, NO_DATA (no input) or
            INVALID_DATA (nothing passed validation)
        """
        candidates = list(candidates)
        if not candidates:
            return CoordinateResult.empty(ResolutionStatus.NO_DATA)

        valid = [c for c in candidates if c.is_valid()]
        if not valid:
            logger.debug(f"All {len(candidates)} candidate coordinates failed validation")
            return CoordinateResult.empty(ResolutionStatus.INVALID_DATA)

        clusters = self._cluster(valid)

        primary = clusters[0]
        for cluster in clusters[1:]:
            if cluster.weight > primary.weight:
                primary = cluster

        best = primary.best_candidate()
        confidence = self._confidence(primary, best, single_cluster=len(clusters) == 1)

        return CoordinateResult(
            lat=best.lat,
            lon=best.lon,
            source=best.source_tag,
            confidence=confidence,
            status=ResolutionStatus.OK,
        )

    @staticmethod
    def _confidence(cluster: CoordinateCluster, best: CoordinateCandidate, single_cluster: bool) -> int:
        confidence = 50
        confidence += min(30, len(cluster) * 10)
        if single_cluster:
            confidence += 20
        confidence += best.priority
        return min(100, confidence)

    def _geocode_query(self, name: str, region: Optional[str], city: Optional[str]) -> str:
        parts = [f"{name} station"]
        if city:
            parts.append(city)
        if region and region != UNCLASSIFIED_REGION:
            parts.append(region)
        return " ".join(parts)

    def supplement_coordinate(
        self,
        name: str,
        region: Optional[str] = None,
        city: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> CoordinateResult:
        """
        Find a coordinate for a station that has none.

        Cache hits come back with status CACHED. On a miss the geocoder is
        called through the rate limiter; only successes are cached.
        Source failures yield NOT_FOUND. Cancellation propagates.
        """
        key = CoordinateCache.make_key(name, region)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Using cached coordinate for {name}")
            return CoordinateResult(
                lat=cached.lat,
                lon=cached.lon,
                source=cached.source,
                confidence=cached.confidence,
                status=ResolutionStatus.CACHED,
            )

        if self.geocoder is None:
            return CoordinateResult.empty(ResolutionStatus.NOT_FOUND)

        self.rate_limiter.acquire(SourceClass.GEOCODER, cancel_token)
        query = self._geocode_query(name, region, city)
        try:
            candidate = self.geocoder.search(query)
        except SourceUnavailableError as e:
            logger.warning(f"Geocoder lookup failed for {name}: {e}")
            return CoordinateResult.empty(ResolutionStatus.NOT_FOUND)
        except Exception as e:
            logger.error(f"Unexpected geocoder error for {name}: {e!r}")
            return CoordinateResult.empty(ResolutionStatus.NOT_FOUND)

        if candidate is None or not candidate.is_valid():
            logger.debug(f"No usable geocoder result for '{query}'")
            return CoordinateResult.empty(ResolutionStatus.NOT_FOUND)

        result = CoordinateResult(
            lat=candidate.lat,
            lon=candidate.lon,
            source=SourceTag.GEOCODER,
            confidence=GEOCODER_CONFIDENCE,
            status=ResolutionStatus.OK,
        )
        self.cache.put(key, result)
        logger.info(
            f"Coordinate supplemented for {name}: lat={result.lat}, lon={result.lon}, "
            f"confidence={result.confidence}"
        )
        return result

    def record_manual_coordinate(self, name: str, region: Optional[str], lat: float, lon: float) -> bool:
        """Cache a manually supplied coordinate. Returns False if it is invalid."""
        if not is_coordinate_valid(lat, lon):
            logger.warning(f"Rejected invalid manual coordinate for {name}: lat={lat}, lon={lon}")
            return False
        self.cache.put(
            CoordinateCache.make_key(name, region),
            CoordinateResult(
                lat=lat,
                lon=lon,
                source=SourceTag.MANUAL,
                confidence=MANUAL_CONFIDENCE,
                status=ResolutionStatus.OK,
            ),
        )
        logger.info(f"Manual coordinate recorded for {name}: lat={lat}, lon={lon}")
        return True

    @staticmethod
    def coordinate_statistics(observations: Iterable[RawStationObservation]) -> CoordinateStatistics:
        total = 0
        valid = 0
        for observation in observations:
            total += 1
            if is_coordinate_valid(observation.lat, observation.lon):
                valid += 1
        return CoordinateStatistics(total=total, has_coordinates=valid, missing_coordinates=total - valid)
