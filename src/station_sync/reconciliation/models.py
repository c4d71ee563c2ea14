"""
Core data models for station reconciliation.

Observations, candidates and results are frozen dataclasses and serve as the
contract between the source clients, the resolvers and the orchestrator.
Station groups are the only mutable structure: they are built during one sync
run and discarded once persisted.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Dict, List, Mapping, Optional


# National bounding box used by every coordinate validity check
MIN_LATITUDE = 33.0
MAX_LATITUDE = 43.0
MIN_LONGITUDE = 124.0
MAX_LONGITUDE = 132.0

EARTH_RADIUS_M = 6371000.0

# Two observations closer than this are the same physical station complex
SAME_STATION_THRESHOLD_M = 200.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def is_coordinate_empty(lat: Optional[float], lon: Optional[float]) -> bool:
    """True when either coordinate is missing or zero."""
    return lat is None or lon is None or lat == 0.0 or lon == 0.0


def is_coordinate_valid(lat: Optional[float], lon: Optional[float]) -> bool:
    """
    True when the pair is a usable station coordinate.

    Rejects missing values, non-numbers, NaN/infinite values, zeros and
    anything outside the national bounding box.
    """
    if is_coordinate_empty(lat, lon):
        return False
    try:
        lat_f = float(lat)  # type: ignore[arg-type]
        lon_f = float(lon)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat_f) and math.isfinite(lon_f)):
        return False
    return (
        MIN_LATITUDE <= lat_f <= MAX_LATITUDE
        and MIN_LONGITUDE <= lon_f <= MAX_LONGITUDE
    )


def parse_coordinate(value: Any) -> Optional[float]:
    """Parse a coordinate from a source payload; blanks, zero and garbage become None."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        parsed = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            parsed = float(text)
        except ValueError:
            return None
    return None if parsed == 0.0 else parsed


class SourceTag(StrEnum):
    """Origin of a station observation or coordinate."""
    DETAIL_REGISTRY = "DETAIL_REGISTRY"
    MANUAL = "MANUAL"
    GEOCODER = "GEOCODER"
    NAME_REGISTRY = "NAME_REGISTRY"
    CALCULATED = "CALCULATED"


# Higher wins when coordinates disagree. Never persisted.
SOURCE_PRIORITY: Mapping[str, int] = {
    SourceTag.DETAIL_REGISTRY: 10,
    SourceTag.MANUAL: 9,
    SourceTag.GEOCODER: 8,
    SourceTag.NAME_REGISTRY: 6,
    SourceTag.CALCULATED: 4,
}


def source_priority(tag: Optional[str]) -> int:
    if tag is None:
        return 0
    return SOURCE_PRIORITY.get(tag, 0)


class SourceClass(StrEnum):
    """Rate-limited external source classes."""
    NAME_REGISTRY = "NAME_REGISTRY"
    DETAIL_REGISTRY = "DETAIL_REGISTRY"
    GEOCODER = "GEOCODER"


class ResolutionStatus(StrEnum):
    """Outcome of a coordinate resolution."""
    OK = "ok"
    CACHED = "cached"
    NO_DATA = "no_data"
    INVALID_DATA = "invalid_data"
    NOT_FOUND = "not_found"


class RunStage(StrEnum):
    IDLE = "IDLE"
    COLLECTING_NAMES = "COLLECTING_NAMES"
    FETCHING_DETAILS = "FETCHING_DETAILS"
    GROUPING = "GROUPING"
    ENRICHING_COORDINATES = "ENRICHING_COORDINATES"
    PERSISTING = "PERSISTING"
    SUPPLEMENTING = "SUPPLEMENTING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStage.COMPLETED, RunStage.ERROR, RunStage.CANCELLED)


@dataclass(frozen=True)
class RawStationObservation:
    """
    One station record as reported by a source client.

    Coordinates are optional: the name registry rarely carries them, the
    detail registry usually does.
    """
    name: str
    line_label: Optional[str]
    source_tag: SourceTag
    lat: Optional[float] = None
    lon: Optional[float] = None
    address: Optional[str] = None
    source_station_id: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None

    def has_coordinate(self) -> bool:
        return not is_coordinate_empty(self.lat, self.lon)


@dataclass(frozen=True)
class StandardizedStation:
    """Deterministic standardization of a raw station name plus region/city hints."""
    original_name: str
    clean_name: str
    canonical_name: str
    display_name: str
    region: str
    city: Optional[str]
    is_duplicate_candidate: bool


@dataclass(frozen=True)
class CoordinateCandidate:
    lat: float
    lon: float
    source_tag: str
    station_id: Optional[str] = None

    @property
    def priority(self) -> int:
        return source_priority(self.source_tag)

    def is_valid(self) -> bool:
        return is_coordinate_valid(self.lat, self.lon)


@dataclass
class CoordinateCluster:
    """Candidates within the same-station threshold of the cluster seed."""
    candidates: List[CoordinateCandidate] = field(default_factory=list)

    @property
    def seed(self) -> CoordinateCandidate:
        return self.candidates[0]

    @property
    def weight(self) -> int:
        return sum(c.priority for c in self.candidates)

    def add(self, candidate: CoordinateCandidate) -> None:
        self.candidates.append(candidate)

    def best_candidate(self) -> CoordinateCandidate:
        """Highest-priority member; first seen wins ties."""
        best = self.candidates[0]
        for candidate in self.candidates[1:]:
            if candidate.priority > best.priority:
                best = candidate
        return best

    def __len__(self) -> int:
        return len(self.candidates)


@dataclass(frozen=True)
class CoordinateResult:
    lat: Optional[float] = None
    lon: Optional[float] = None
    source: Optional[str] = None
    confidence: int = 0
    status: ResolutionStatus = ResolutionStatus.NOT_FOUND

    def is_valid(self) -> bool:
        return self.lat is not None and self.lon is not None

    @classmethod
    def empty(cls, status: ResolutionStatus) -> "CoordinateResult":
        return cls(status=status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lat": self.lat,
            "lon": self.lon,
            "source": str(self.source) if self.source is not None else None,
            "confidence": self.confidence,
            "status": self.status.value,
        }


_LINE_DIGITS = re.compile(r"\d+")


@dataclass
class StationGroup:
    """
    All observations sharing one canonical name during a sync run.

    The representative coordinate is attached by the enrichment stage.
    """
    canonical_name: str
    standardized: StandardizedStation
    members: List[RawStationObservation] = field(default_factory=list)
    representative_lat: Optional[float] = None
    representative_lon: Optional[float] = None
    coordinate_confidence: Optional[int] = None
    coordinate_source: Optional[str] = None

    def add(self, observation: RawStationObservation) -> None:
        self.members.append(observation)

    def known_coordinates(self) -> List[CoordinateCandidate]:
        """Member coordinates that are present, as reconciliation candidates."""
        return [
            CoordinateCandidate(
                lat=float(m.lat),  # type: ignore[arg-type]
                lon=float(m.lon),  # type: ignore[arg-type]
                source_tag=m.source_tag,
                station_id=m.source_station_id,
            )
            for m in self.members
            if m.has_coordinate()
        ]

    def set_representative_coordinate(self, result: CoordinateResult) -> None:
        self.representative_lat = result.lat
        self.representative_lon = result.lon
        self.coordinate_confidence = result.confidence
        self.coordinate_source = str(result.source) if result.source is not None else None

    def has_coordinate(self) -> bool:
        return is_coordinate_valid(self.representative_lat, self.representative_lon)

    def available_lines(self) -> List[str]:
        return sorted({m.line_label for m in self.members if m.line_label})

    def line_names_text(self) -> str:
        """Line labels for display, numbered lines first in numeric order."""
        def sort_key(label: str) -> tuple[int, int, str]:
            digits = _LINE_DIGITS.findall(label)
            if digits:
                return (0, int(digits[0]), label)
            return (1, 0, label)

        names = []
        for label in sorted(self.available_lines(), key=sort_key):
            names.append(f"Line {int(label)}" if label.isdigit() else label)
        return ", ".join(names)

    def first_address(self, line_label: Optional[str] = None) -> Optional[str]:
        for member in self.members:
            if member.address and (line_label is None or member.line_label == line_label):
                return member.address
        return None

    def first_station_id(self, line_label: Optional[str] = None) -> Optional[str]:
        for member in self.members:
            if member.source_station_id and (line_label is None or member.line_label == line_label):
                return member.source_station_id
        return None

    def best_source(self) -> str:
        """Highest-priority member source, used as the persisted data source."""
        best = self.members[0].source_tag
        for member in self.members[1:]:
            if source_priority(member.source_tag) > source_priority(best):
                best = member.source_tag
        return str(best)


@dataclass
class PersistedStation:
    """A station row as stored by the persistence layer."""
    name: str
    display_name: str
    region: str
    data_source: str
    line_label: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    external_id: Optional[str] = None
    coordinate_confidence: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_coordinates(self) -> bool:
        return is_coordinate_valid(self.lat, self.lon)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "line_label": self.line_label,
            "lat": self.lat,
            "lon": self.lon,
            "address": self.address,
            "region": self.region,
            "city": self.city,
            "data_source": self.data_source,
            "external_id": self.external_id,
            "has_coordinates": self.has_coordinates,
            "coordinate_confidence": self.coordinate_confidence,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class CoordinateStatistics:
    total: int
    has_coordinates: int
    missing_coordinates: int

    @property
    def completion_rate(self) -> float:
        return self.has_coordinates / self.total * 100 if self.total > 0 else 0.0


@dataclass(frozen=True)
class BatchProcessResult:
    total: int
    processed: int

    @property
    def success_rate(self) -> float:
        return self.processed / self.total * 100 if self.total > 0 else 0.0


@dataclass
class SyncResult:
    """Summary of one full sync run."""
    success: bool = False
    error_message: Optional[str] = None
    names_collected: int = 0
    detail_records: int = 0
    groups_created: int = 0
    coordinates_enriched: int = 0
    stations_inserted: int = 0
    stations_updated: int = 0

    @classmethod
    def failed(cls, error_message: str, **counts: int) -> "SyncResult":
        return cls(success=False, error_message=error_message, **counts)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class SupplementResult:
    """Summary of one coordinate maintenance run."""
    total: int = 0
    success: int = 0
    failure: int = 0
    error_message: Optional[str] = None

    @property
    def success_rate(self) -> float:
        return self.success / self.total * 100 if self.total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {**self.__dict__, "success_rate": self.success_rate}


@dataclass
class ReconciliationConfig:
    """Tuning knobs for a reconciliation run."""
    # Name registry paging
    name_page_size: int = 1000
    max_name_pages: int = 10
    name_registry_region: str = "Seoul"

    # Bounded fan-outs
    detail_concurrency: int = 3
    enrich_concurrency: int = 3

    # Streaming maintenance run
    stream_page_size: int = 20

    # Minimum inter-request intervals (seconds)
    name_registry_interval_s: float = 0.2
    detail_registry_interval_s: float = 0.5
    geocoder_interval_s: float = 1.0

    # Coordinate cache
    cache_ttl_s: float = 7 * 24 * 3600
    cache_max_entries: int = 10_000

    def intervals(self) -> Dict[SourceClass, float]:
        return {
            SourceClass.NAME_REGISTRY: self.name_registry_interval_s,
            SourceClass.DETAIL_REGISTRY: self.detail_registry_interval_s,
            SourceClass.GEOCODER: self.geocoder_interval_s,
        }

    @classmethod
    def from_settings(cls, settings: Any = None, **overrides: Any) -> "ReconciliationConfig":
        """Build a config, taking any matching field from `settings` and then `overrides`."""
        values: Dict[str, Any] = {}
        if settings is not None:
            for name in cls.__dataclass_fields__:  # type: ignore[attr-defined]
                if hasattr(settings, name):
                    values[name] = getattr(settings, name)
        values.update(overrides)
        return cls(**values)
