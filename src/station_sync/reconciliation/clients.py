"""
HTTP clients for the external station sources.

- SeoulNameRegistryClient: Seoul open-data subway station list (names)
- MolitDetailClient: national subway station registry (details, coordinates)
- NominatimGeocoder: OpenStreetMap free-text geocoder (fallback coordinates)

All clients share one requests.Session per instance and turn transport and
HTTP failures into SourceUnavailableError. Clients without an API key log a
warning once and return empty results without network I/O.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..utils.errors import ConfigurationMissingError, DataValidationError, SourceUnavailableError
from .base import DetailSource, GeocodeSource, NameSource
from .models import (
    CoordinateCandidate,
    RawStationObservation,
    SourceTag,
    is_coordinate_valid,
    parse_coordinate,
)


logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


# ---------------------------------------------------------------------------
# Payload models
# ---------------------------------------------------------------------------

class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class SeoulStationRow(_Payload):
    station_name: str = Field(alias="STATION_NM")
    line_num: Optional[str] = Field(default=None, alias="LINE_NUM")
    station_code: Optional[str] = Field(default=None, alias="STATION_CD")
    x_wgs: Optional[str] = Field(default=None, alias="XPOINT_WGS")
    y_wgs: Optional[str] = Field(default=None, alias="YPOINT_WGS")

    @field_validator("x_wgs", "y_wgs", "station_code", "line_num", mode="before")
    @classmethod
    def _as_text(cls, value: Any) -> Any:
        return str(value) if isinstance(value, (int, float)) else value


class MolitStationItem(_Payload):
    station_id: Optional[str] = Field(default=None, alias="subwayStationId")
    station_name: str = Field(alias="subwayStationName")
    route_name: Optional[str] = Field(default=None, alias="subwayRouteName")
    sido_name: Optional[str] = Field(default=None, alias="sidoName")
    sgg_name: Optional[str] = Field(default=None, alias="sggName")
    road_address: Optional[str] = Field(default=None, alias="roadAddress")
    lat: Optional[float] = None
    lon: Optional[float] = None

    @field_validator("station_id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> Any:
        return str(value) if isinstance(value, (int, float)) else value

    @field_validator("lat", "lon", mode="before")
    @classmethod
    def _coordinate(cls, value: Any) -> Optional[float]:
        return parse_coordinate(value)


class NominatimPlace(_Payload):
    lat: Optional[float] = None
    lon: Optional[float] = None
    display_name: str = ""
    osm_id: Optional[str] = None
    importance: Optional[float] = None
    extratags: Optional[Dict[str, Any]] = None

    @field_validator("osm_id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> Any:
        return str(value) if isinstance(value, (int, float)) else value

    @field_validator("lat", "lon", mode="before")
    @classmethod
    def _coordinate(cls, value: Any) -> Optional[float]:
        return parse_coordinate(value)

    def looks_like_station(self) -> bool:
        name = self.display_name.lower()
        if "subway" in name or "station" in name or "지하철" in name or "역" in name:
            return True
        tags = self.extratags or {}
        return "railway" in tags or "subway" in tags


def _parse_items(source: str, model: Type[M], items: List[Any]) -> List[M]:
    """Validate payload items, logging and skipping the ones that fail."""
    parsed: List[M] = []
    errors: List[dict[str, Any]] = []
    for index, item in enumerate(items):
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as e:
            for err in e.errors():
                errors.append({**err, "loc": (index, *err.get("loc", ()))})
    if errors:
        failure = DataValidationError(source, errors)
        logger.warning(f"{failure}; skipped invalid records:\n{failure.summary()}")
    return parsed


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

class _HttpSourceClient:
    """Shared session handling for source clients."""

    SOURCE: str = "source"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._warned_unconfigured = False

        if session is None:
            # Persistent session for connection pooling across worker threads
            session = requests.Session()
            adapter = requests.adapters.HTTPAdapter(
                pool_connections=4,
                pool_maxsize=8,
                max_retries=2,
            )
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session
        self.session.headers.update({"Accept": "application/json", **(headers or {})})

    def _warn_unconfigured(self, setting: str) -> None:
        if not self._warned_unconfigured:
            logger.warning(f"{self.SOURCE} is not configured ({setting} missing); returning no data")
            self._warned_unconfigured = True

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise SourceUnavailableError(self.SOURCE, str(e), status) from e
        except (requests.RequestException, ValueError) as e:
            raise SourceUnavailableError(self.SOURCE, str(e)) from e

    def cleanup(self) -> None:
        """Close the session and its connection pools."""
        for adapter in self.session.adapters.values():
            adapter.close()
        self.session.close()


class SeoulNameRegistryClient(_HttpSourceClient, NameSource):
    """
    Seoul open-data `SearchInfoBySubwayNameService` client.

    The service pages by 1-based inclusive index ranges; `list_names`
    translates from offset/limit.
    """

    SOURCE = "seoul_name_registry"
    SERVICE = "SearchInfoBySubwayNameService"
    NO_DATA_CODE = "INFO-200"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "http://openAPI.seoul.go.kr:8088",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        strict: bool = False,
    ):
        if strict and not api_key:
            raise ConfigurationMissingError(self.SOURCE, "SEOUL_API_KEY")
        super().__init__(base_url, timeout=timeout, session=session)
        self.api_key = api_key

    @staticmethod
    def _lat_lon(row: SeoulStationRow) -> tuple[Optional[float], Optional[float]]:
        # The service is inconsistent about which axis is which
        x = parse_coordinate(row.x_wgs)
        y = parse_coordinate(row.y_wgs)
        if is_coordinate_valid(x, y):
            return x, y
        if is_coordinate_valid(y, x):
            return y, x
        return None, None

    def list_names(self, offset: int, limit: int) -> List[RawStationObservation]:
        if not self.api_key:
            self._warn_unconfigured("SEOUL_API_KEY")
            return []

        start, end = offset + 1, offset + limit
        url = f"{self.base_url}/{self.api_key}/json/{self.SERVICE}/{start}/{end}/"
        logger.debug(f"Requesting Seoul station names {start}-{end}")
        payload = self._get_json(url)

        if not isinstance(payload, dict):
            raise SourceUnavailableError(self.SOURCE, "unexpected response shape")

        service = payload.get(self.SERVICE)
        if service is None:
            result = payload.get("RESULT") or {}
            if not isinstance(result, dict):
                raise SourceUnavailableError(self.SOURCE, "unexpected RESULT shape")
            if result.get("CODE") == self.NO_DATA_CODE:
                return []
            raise SourceUnavailableError(
                self.SOURCE, f"{result.get('CODE', 'unknown')}: {result.get('MESSAGE', 'no payload')}"
            )
        if not isinstance(service, dict):
            raise SourceUnavailableError(self.SOURCE, f"unexpected {self.SERVICE} shape")

        rows = service.get("row") or []
        if not isinstance(rows, list):
            raise SourceUnavailableError(self.SOURCE, "unexpected row shape")
        rows = _parse_items(self.SOURCE, SeoulStationRow, rows)
        observations = []
        for row in rows:
            lat, lon = self._lat_lon(row)
            observations.append(RawStationObservation(
                name=row.station_name.strip(),
                line_label=row.line_num,
                source_tag=SourceTag.NAME_REGISTRY,
                lat=lat,
                lon=lon,
                source_station_id=row.station_code,
            ))
        return observations


class MolitDetailClient(_HttpSourceClient, DetailSource):
    """
    National subway station registry client (data.go.kr SubwayInfoService).

    Returns one observation per (station, route) carrying coordinates,
    province, city and road address when available.
    """

    SOURCE = "molit_detail_registry"
    ENDPOINT = "SubwayInfoService/getKwrdFndSubwaySttnList"

    def __init__(
        self,
        service_key: Optional[str],
        base_url: str = "https://apis.data.go.kr/1613000",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        page_size: int = 100,
        strict: bool = False,
    ):
        if strict and not service_key:
            raise ConfigurationMissingError(self.SOURCE, "MOLIT_SERVICE_KEY")
        super().__init__(base_url, timeout=timeout, session=session)
        self.service_key = service_key
        self.page_size = page_size

    @staticmethod
    def _extract_items(payload: Any) -> List[Any]:
        if not isinstance(payload, dict):
            raise SourceUnavailableError(MolitDetailClient.SOURCE, "unexpected response shape")
        response = payload.get("response") or {}
        if not isinstance(response, dict):
            raise SourceUnavailableError(MolitDetailClient.SOURCE, "unexpected response shape")
        header = response.get("header") or {}
        body = response.get("body") or {}
        if not isinstance(header, dict) or not isinstance(body, dict):
            raise SourceUnavailableError(MolitDetailClient.SOURCE, "unexpected response shape")
        code = header.get("resultCode")
        if code not in (None, "00", "0000"):
            raise SourceUnavailableError(
                MolitDetailClient.SOURCE, f"{code}: {header.get('resultMsg', 'error')}"
            )
        items = body.get("items")
        if not items or not isinstance(items, dict):
            return []
        item = items.get("item")
        if item is None:
            return []
        return item if isinstance(item, list) else [item]

    def lookup_by_name(self, name: str) -> List[RawStationObservation]:
        if not self.service_key:
            self._warn_unconfigured("MOLIT_SERVICE_KEY")
            return []

        params = {
            "serviceKey": self.service_key,
            "pageNo": 1,
            "numOfRows": self.page_size,
            "_type": "json",
            "subwayStationName": name,
        }
        payload = self._get_json(f"{self.base_url}/{self.ENDPOINT}", params=params)
        items = _parse_items(self.SOURCE, MolitStationItem, self._extract_items(payload))

        return [
            RawStationObservation(
                name=item.station_name.strip(),
                line_label=item.route_name,
                source_tag=SourceTag.DETAIL_REGISTRY,
                lat=item.lat,
                lon=item.lon,
                address=item.road_address,
                source_station_id=item.station_id,
                region=item.sido_name,
                city=item.sgg_name,
            )
            for item in items
        ]


class NominatimGeocoder(_HttpSourceClient, GeocodeSource):
    """
    OpenStreetMap Nominatim search client.

    Prefers station-like results among the top three; otherwise takes the
    first result with a valid coordinate.
    """

    SOURCE = "nominatim"

    def __init__(
        self,
        base_url: str = "https://nominatim.openstreetmap.org",
        user_agent: str = "station-sync/0.1",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(base_url, timeout=timeout, session=session, headers={"User-Agent": user_agent})

    def search(self, query: str) -> Optional[CoordinateCandidate]:
        params = {
            "q": query,
            "format": "json",
            "limit": 3,
            "addressdetails": 1,
            "extratags": 1,
        }
        payload = self._get_json(f"{self.base_url}/search", params=params)
        if not isinstance(payload, list) or not payload:
            return None

        places = [p for p in _parse_items(self.SOURCE, NominatimPlace, payload)
                  if is_coordinate_valid(p.lat, p.lon)]
        if not places:
            return None

        best = next((p for p in places if p.looks_like_station()), places[0])
        return CoordinateCandidate(
            lat=best.lat,  # type: ignore[arg-type]
            lon=best.lon,  # type: ignore[arg-type]
            source_tag=SourceTag.GEOCODER,
            station_id=best.osm_id,
        )
