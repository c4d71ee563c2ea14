from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


from station_sync.reconciliation import (  # noqa: E402
    CoordinateCandidate,
    DetailSource,
    DuckDBStationStore,
    GeocodeSource,
    NameSource,
    RawStationObservation,
    SourceTag,
)
from station_sync.utils.errors import SourceUnavailableError  # noqa: E402


def name_obs(name: str, line: Optional[str] = None, **kwargs) -> RawStationObservation:
    return RawStationObservation(name=name, line_label=line, source_tag=SourceTag.NAME_REGISTRY, **kwargs)


def detail_obs(name: str, line: Optional[str], lat: Optional[float], lon: Optional[float], **kwargs) -> RawStationObservation:
    return RawStationObservation(
        name=name, line_label=line, source_tag=SourceTag.DETAIL_REGISTRY, lat=lat, lon=lon, **kwargs
    )


class FakeNameSource(NameSource):
    def __init__(self, observations: Iterable[RawStationObservation], fail_offsets: Iterable[int] = ()):
        self.observations = list(observations)
        self.fail_offsets = set(fail_offsets)
        self.calls: List[tuple[int, int]] = []

    def list_names(self, offset: int, limit: int) -> List[RawStationObservation]:
        self.calls.append((offset, limit))
        if offset in self.fail_offsets:
            raise SourceUnavailableError("fake_names", "page unavailable", 503)
        return self.observations[offset:offset + limit]


class FakeDetailSource(DetailSource):
    def __init__(
        self,
        records: Optional[Dict[str, List[RawStationObservation]]] = None,
        failing: Iterable[str] = (),
    ):
        self.records = records or {}
        self.failing = set(failing)
        self.calls: List[str] = []
        self.lock = threading.Lock()

    def lookup_by_name(self, name: str) -> List[RawStationObservation]:
        with self.lock:
            self.calls.append(name)
        if name in self.failing:
            raise SourceUnavailableError("fake_details", f"lookup failed for {name}")
        return list(self.records.get(name, []))


class BlockingDetailSource(FakeDetailSource):
    """Blocks every lookup until `release` is set."""

    def __init__(self, records=None):
        super().__init__(records)
        self.started = threading.Event()
        self.release = threading.Event()

    def lookup_by_name(self, name: str) -> List[RawStationObservation]:
        self.started.set()
        self.release.wait(timeout=5)
        return super().lookup_by_name(name)


class ScriptedGeocoder(GeocodeSource):
    """Plays back a script of outcomes: a candidate, None, or an exception to raise."""

    def __init__(self, outcomes: Iterable[object]):
        self.outcomes = list(outcomes)
        self.queries: List[str] = []
        self.lock = threading.Lock()

    def search(self, query: str) -> Optional[CoordinateCandidate]:
        with self.lock:
            self.queries.append(query)
            outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome  # type: ignore[return-value]


def geocoded(lat: float, lon: float) -> CoordinateCandidate:
    return CoordinateCandidate(lat=lat, lon=lon, source_tag=SourceTag.GEOCODER, station_id="osm-1")


@pytest.fixture
def store():
    store = DuckDBStationStore(":memory:")
    yield store
    store.close()
