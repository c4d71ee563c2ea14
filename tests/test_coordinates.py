from __future__ import annotations

import math

import pytest

from conftest import ScriptedGeocoder, detail_obs, geocoded, name_obs
from station_sync.reconciliation import (
    CancellationToken,
    CoordinateCache,
    CoordinateCandidate,
    CoordinateReconciler,
    CoordinateResult,
    NoOpRateLimiter,
    ResolutionStatus,
    SourceRateLimiter,
    SourceClass,
    SourceTag,
    StationNameResolver,
    is_coordinate_empty,
    is_coordinate_valid,
)
from station_sync.reconciliation import throttling
from station_sync.reconciliation.base import RateLimiter
from station_sync.utils.errors import RunCancelled, SourceUnavailableError


GANGNAM = (37.4979, 127.0276)
GANGNAM_NEAR = (37.4982, 127.0278)  # ~40 m away
JAMSIL = (37.5133, 127.1001)


def candidate(point, tag=SourceTag.DETAIL_REGISTRY, station_id=None):
    return CoordinateCandidate(lat=point[0], lon=point[1], source_tag=tag, station_id=station_id)


class RecordingRateLimiter(RateLimiter):
    def __init__(self):
        self.acquired = []

    def acquire(self, source_class, cancel_token=None):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        self.acquired.append(source_class)


@pytest.fixture
def reconciler():
    return CoordinateReconciler(StationNameResolver())


@pytest.mark.parametrize(
    "lat, lon, expected",
    [
        (37.5, 127.0, True),
        (33.0, 124.0, True),
        (43.0, 132.0, True),
        (32.99, 127.0, False),
        (37.5, 132.01, False),
        (0.0, 127.0, False),
        (37.5, 0.0, False),
        (None, 127.0, False),
        (37.5, None, False),
        (math.nan, 127.0, False),
        (37.5, math.inf, False),
        (40.7128, -74.0060, False),
    ],
)
def test_is_coordinate_valid(lat, lon, expected):
    assert is_coordinate_valid(lat, lon) is expected


def test_is_coordinate_empty():
    assert is_coordinate_empty(None, 127.0)
    assert is_coordinate_empty(37.5, None)
    assert is_coordinate_empty(0.0, 127.0)
    assert not is_coordinate_empty(37.5, 127.0)
    # Out of range but present is not empty
    assert not is_coordinate_empty(10.0, 10.0)


def test_no_candidates_is_no_data(reconciler):
    result = reconciler.determine_group_coordinate([])
    assert result.status == ResolutionStatus.NO_DATA
    assert result.confidence == 0
    assert not result.is_valid()


def test_only_invalid_candidates_is_invalid_data(reconciler):
    result = reconciler.determine_group_coordinate([
        candidate((0.0, 0.0)),
        candidate((40.7128, -74.0060)),
    ])
    assert result.status == ResolutionStatus.INVALID_DATA
    assert not result.is_valid()


def test_single_candidate(reconciler):
    result = reconciler.determine_group_coordinate([candidate(GANGNAM)])
    assert result.status == ResolutionStatus.OK
    assert (result.lat, result.lon) == GANGNAM
    assert result.source == SourceTag.DETAIL_REGISTRY
    # 50 + 10 (one member) + 20 (single cluster) + 10 (detail registry)
    assert result.confidence == 90


def test_nearby_candidates_form_one_cluster(reconciler):
    result = reconciler.determine_group_coordinate([
        candidate(GANGNAM_NEAR, SourceTag.NAME_REGISTRY),
        candidate(GANGNAM, SourceTag.DETAIL_REGISTRY),
    ])
    # Highest priority member represents the cluster
    assert (result.lat, result.lon) == GANGNAM
    assert result.source == SourceTag.DETAIL_REGISTRY
    assert result.confidence == 100


def test_confidence_is_capped(reconciler):
    result = reconciler.determine_group_coordinate([candidate(GANGNAM)] * 5)
    assert result.confidence == 100


def test_heavier_cluster_wins(reconciler):
    result = reconciler.determine_group_coordinate([
        candidate(JAMSIL, SourceTag.DETAIL_REGISTRY),
        candidate(GANGNAM, SourceTag.NAME_REGISTRY),
        candidate(GANGNAM_NEAR, SourceTag.NAME_REGISTRY),
    ])
    # Gangnam cluster weighs 6 + 6 = 12 against Jamsil's 10
    assert (result.lat, result.lon) == GANGNAM
    assert result.source == SourceTag.NAME_REGISTRY
    # 50 + 20 (two members) + 0 (two clusters) + 6
    assert result.confidence == 76


def test_cluster_weight_tie_keeps_first_seen(reconciler):
    result = reconciler.determine_group_coordinate([
        candidate(JAMSIL, SourceTag.GEOCODER),
        candidate(GANGNAM, SourceTag.GEOCODER),
    ])
    assert (result.lat, result.lon) == JAMSIL


def test_member_priority_tie_keeps_first_seen(reconciler):
    result = reconciler.determine_group_coordinate([
        candidate(GANGNAM_NEAR, station_id="a"),
        candidate(GANGNAM, station_id="b"),
    ])
    assert (result.lat, result.lon) == GANGNAM_NEAR


def test_invalid_candidates_are_ignored(reconciler):
    result = reconciler.determine_group_coordinate([
        candidate((0.0, 0.0), SourceTag.DETAIL_REGISTRY),
        candidate(GANGNAM, SourceTag.GEOCODER),
    ])
    assert result.status == ResolutionStatus.OK
    assert result.source == SourceTag.GEOCODER


def test_supplement_coordinate_geocodes_then_caches():
    geocoder = ScriptedGeocoder([geocoded(*GANGNAM)])
    limiter = RecordingRateLimiter()
    reconciler = CoordinateReconciler(StationNameResolver(), geocoder, limiter)

    first = reconciler.supplement_coordinate("Gangnam", "Seoul Metropolitan City")
    assert first.status == ResolutionStatus.OK
    assert first.source == SourceTag.GEOCODER
    assert first.confidence == 70
    assert (first.lat, first.lon) == GANGNAM
    assert geocoder.queries == ["Gangnam station Seoul Metropolitan City"]
    assert limiter.acquired == [SourceClass.GEOCODER]

    second = reconciler.supplement_coordinate("Gangnam", "Seoul Metropolitan City")
    assert second.status == ResolutionStatus.CACHED
    assert (second.lat, second.lon) == GANGNAM
    assert second.confidence == 70
    assert len(geocoder.queries) == 1


def test_supplement_coordinate_failures_are_not_cached():
    geocoder = ScriptedGeocoder([
        SourceUnavailableError("nominatim", "timeout"),
        None,
        geocoded(0.0, 0.0),
        geocoded(*GANGNAM),
    ])
    reconciler = CoordinateReconciler(StationNameResolver(), geocoder, NoOpRateLimiter())

    for _ in range(3):
        result = reconciler.supplement_coordinate("Gangnam", "Seoul")
        assert result.status == ResolutionStatus.NOT_FOUND
        assert result.confidence == 0
        assert not result.is_valid()

    assert reconciler.supplement_coordinate("Gangnam", "Seoul").status == ResolutionStatus.OK
    assert len(geocoder.queries) == 4


def test_supplement_coordinate_cache_is_keyed_by_region():
    geocoder = ScriptedGeocoder([geocoded(*GANGNAM), geocoded(*JAMSIL)])
    reconciler = CoordinateReconciler(StationNameResolver(), geocoder, NoOpRateLimiter())

    reconciler.supplement_coordinate("City Hall", "Seoul")
    other = reconciler.supplement_coordinate("City Hall", "Daejeon")
    assert other.status == ResolutionStatus.OK
    assert (other.lat, other.lon) == JAMSIL


def test_supplement_without_geocoder_is_not_found(reconciler):
    assert reconciler.supplement_coordinate("Gangnam", "Seoul").status == ResolutionStatus.NOT_FOUND


def test_supplement_propagates_cancellation():
    token = CancellationToken()
    token.cancel()
    geocoder = ScriptedGeocoder([geocoded(*GANGNAM)])
    reconciler = CoordinateReconciler(StationNameResolver(), geocoder)

    with pytest.raises(RunCancelled):
        reconciler.supplement_coordinate("Gangnam", "Seoul", cancel_token=token)
    assert geocoder.queries == []


def test_supplement_coordinate_unexpected_error_is_not_found():
    geocoder = ScriptedGeocoder([TypeError("list indices must be integers"), geocoded(*GANGNAM)])
    reconciler = CoordinateReconciler(StationNameResolver(), geocoder, NoOpRateLimiter())

    assert reconciler.supplement_coordinate("Gangnam", "Seoul").status == ResolutionStatus.NOT_FOUND
    assert reconciler.supplement_coordinate("Gangnam", "Seoul").status == ResolutionStatus.OK


def test_default_rate_limiter_spaces_geocoder_calls(monkeypatch):
    sleeps = []
    monkeypatch.setattr(throttling.time, "sleep", sleeps.append)
    geocoder = ScriptedGeocoder([geocoded(*GANGNAM), geocoded(*JAMSIL), geocoded(*GANGNAM_NEAR)])
    reconciler = CoordinateReconciler(StationNameResolver(), geocoder)

    for name in ["Gangnam", "Jamsil", "Yeoksam"]:
        assert reconciler.supplement_coordinate(name, "Seoul").status == ResolutionStatus.OK

    assert isinstance(reconciler.rate_limiter, SourceRateLimiter)
    assert len(sleeps) == 2
    assert sum(sleeps) >= 2.0


def test_manual_coordinate_is_served_from_cache(reconciler):
    assert reconciler.record_manual_coordinate("Gangnam", "Seoul", *GANGNAM)

    result = reconciler.supplement_coordinate("Gangnam", "Seoul")
    assert result.status == ResolutionStatus.CACHED
    assert result.source == SourceTag.MANUAL
    assert result.confidence == 90


def test_invalid_manual_coordinate_is_rejected(reconciler):
    assert not reconciler.record_manual_coordinate("Gangnam", "Seoul", 0.0, 0.0)
    assert len(reconciler.cache) == 0


def test_cache_entries_expire_lazily():
    now = [0.0]
    cache = CoordinateCache(ttl_s=100, clock=lambda: now[0])
    cache.put("k", CoordinateResult(lat=37.5, lon=127.0, status=ResolutionStatus.OK))

    now[0] = 100.0
    assert cache.get("k") is not None
    assert len(cache) == 1

    now[0] = 100.5
    assert cache.get("k") is None
    assert len(cache) == 0


def test_cache_evicts_oldest_when_full():
    cache = CoordinateCache(max_entries=2)
    result = CoordinateResult(lat=37.5, lon=127.0, status=ResolutionStatus.OK)
    cache.put("a", result)
    cache.put("b", result)
    cache.put("c", result)

    assert cache.get("a") is None
    assert cache.get("b") is not None
    assert cache.get("c") is not None
    assert len(cache) == 2


def test_coordinate_statistics():
    stats = CoordinateReconciler.coordinate_statistics([
        detail_obs("Gangnam", "2", *GANGNAM),
        detail_obs("Jamsil", "2", 0.0, 0.0),
        name_obs("Seoul Forest"),
    ])
    assert stats.total == 3
    assert stats.has_coordinates == 1
    assert stats.missing_coordinates == 2
    assert stats.completion_rate == pytest.approx(100 / 3)
