"""
Station name and region normalizers.

Cleans raw station names coming from the registries, detects names that
exist in more than one city, and derives canonical (grouping) and display
names. Everything here is pure and deterministic.
"""

import re
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .models import (
    RawStationObservation,
    SAME_STATION_THRESHOLD_M,
    StandardizedStation,
    haversine_m,
)


UNCLASSIFIED_REGION = "Unclassified"

# (keywords, canonical province name, short suffix label)
_PROVINCES: Tuple[Tuple[Tuple[str, ...], str, str], ...] = (
    (("seoul", "서울"), "Seoul Metropolitan City", "Seoul"),
    (("gyeonggi", "경기"), "Gyeonggi Province", "Gyeonggi"),
    (("incheon", "인천"), "Incheon Metropolitan City", "Incheon"),
    (("daejeon", "대전"), "Daejeon Metropolitan City", "Daejeon"),
    (("daegu", "대구"), "Daegu Metropolitan City", "Daegu"),
    (("busan", "부산"), "Busan Metropolitan City", "Busan"),
    (("gwangju", "광주"), "Gwangju Metropolitan City", "Gwangju"),
    (("ulsan", "울산"), "Ulsan Metropolitan City", "Ulsan"),
)

PROVINCE_LABELS: Mapping[str, str] = {name: label for _, name, label in _PROVINCES}

GYEONGGI = "Gyeonggi Province"
SEOUL = "Seoul Metropolitan City"

_GYEONGGI_CITIES = ("suwon", "수원", "seongnam", "성남", "anyang", "안양",
                    "bucheon", "부천", "goyang", "고양", "yongin", "용인")

# Names known to exist in more than one city. Maintained by hand.
DUPLICATE_STATION_NAMES = frozenset({
    "City Hall", "Stadium",
    "시청", "운동장앞", "공덕", "신설동", "왕십리", "신도림", "사당",
    "교대", "강남", "잠실", "건대입구", "홍대입구", "신촌", "이대",
    "용산", "서울", "영등포", "구로", "금천구청", "석계", "태릉입구",
})

_RE_PARENTHETICAL = re.compile(r"\s*\([^)]*\)")
_RE_LINE_MARKER = re.compile(r"\bline\s*\d+\b|\d+\s*호선", re.I)
_RE_STATION_SUFFIX = re.compile(r"(?:\s+station|역)$", re.I)
_RE_WHITESPACE = re.compile(r"\s+")


def clean_name(raw: Optional[str]) -> str:
    """
    Clean a raw station name.

    "City Hall Station (Line 2)" -> "City Hall", "서울역(1호선)" -> "서울".
    Only one trailing station suffix is removed.
    """
    if not raw:
        return ""
    text = _RE_PARENTHETICAL.sub(" ", raw)
    text = _RE_LINE_MARKER.sub(" ", text)
    text = _RE_WHITESPACE.sub(" ", text).strip()
    stripped = _RE_STATION_SUFFIX.sub("", text, count=1).strip()
    return stripped or text


class StationNameResolver:
    """
    Standardizes station names and regions.

    The duplicate-name set can be replaced per instance; the default is
    DUPLICATE_STATION_NAMES.
    """

    def __init__(self, duplicate_names: Optional[Iterable[str]] = None):
        self.duplicate_names = (
            frozenset(duplicate_names) if duplicate_names is not None else DUPLICATE_STATION_NAMES
        )

    def clean_name(self, raw: Optional[str]) -> str:
        return clean_name(raw)

    def is_duplicate_candidate(self, clean: str) -> bool:
        return clean in self.duplicate_names

    def normalize_region(self, region: Optional[str]) -> Optional[str]:
        """Map region text onto a province by keyword containment; unmatched text passes through."""
        if region is None:
            return None
        text = region.strip()
        lowered = text.lower()
        for keywords, province, _ in _PROVINCES:
            if any(k in lowered for k in keywords):
                return province
        return text

    def infer_region_from_city(self, city: Optional[str]) -> str:
        if not city:
            return UNCLASSIFIED_REGION
        lowered = city.strip().lower()
        # Districts ("-gu") without a city marker are almost always in Seoul
        if ("구" in lowered and "시" not in lowered) or lowered.endswith("-gu"):
            return SEOUL
        if any(c in lowered for c in _GYEONGGI_CITIES):
            return GYEONGGI
        return UNCLASSIFIED_REGION

    def resolve_region(self, region: Optional[str], city: Optional[str]) -> str:
        if region and region.strip():
            return self.normalize_region(region)  # type: ignore[return-value]
        return self.infer_region_from_city(city)

    def region_suffix(self, region: Optional[str], city: Optional[str] = None) -> str:
        """Short label used in parenthetical name suffixes."""
        province = self.normalize_region(region) if region else None
        if province is None:
            return UNCLASSIFIED_REGION
        if province == GYEONGGI:
            return city.strip() if city and city.strip() else PROVINCE_LABELS[GYEONGGI]
        return PROVINCE_LABELS.get(province, province)

    def standardize(
        self,
        raw_name: str,
        region: Optional[str] = None,
        city: Optional[str] = None,
    ) -> StandardizedStation:
        """
        Standardize a raw name with optional region/city hints.

        Duplicate-prone names get a region suffix in both canonical and
        display names, e.g. "City Hall(Seoul)".
        """
        clean = self.clean_name(raw_name)
        resolved_region = self.resolve_region(region, city)
        is_duplicate = self.is_duplicate_candidate(clean)

        if is_duplicate:
            canonical = f"{clean}({self.region_suffix(resolved_region, city)})"
            display = f"{clean}({self.region_suffix(resolved_region)})"
        else:
            canonical = clean
            display = clean

        return StandardizedStation(
            original_name=raw_name,
            clean_name=clean,
            canonical_name=canonical,
            display_name=display,
            region=resolved_region,
            city=city,
            is_duplicate_candidate=is_duplicate,
        )

    def group_stations_by_name(
        self,
        observations: Iterable[RawStationObservation],
    ) -> Dict[str, List[RawStationObservation]]:
        """Partition observations by clean name, keeping input order within each group."""
        grouped: Dict[str, List[RawStationObservation]] = {}
        for observation in observations:
            grouped.setdefault(self.clean_name(observation.name), []).append(observation)
        return grouped

    def is_same_station_group(
        self,
        lat1: float,
        lon1: float,
        lat2: float,
        lon2: float,
        threshold_m: float = SAME_STATION_THRESHOLD_M,
    ) -> bool:
        return haversine_m(lat1, lon1, lat2, lon2) <= threshold_m
