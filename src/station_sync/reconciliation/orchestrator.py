"""
End-to-end station reconciliation runs.

A full sync collects names from the name registry, looks every name up in the
detail registry, groups the observations by canonical name, resolves one
coordinate per group and persists the result. A supplement run streams the
stored stations that still lack coordinates through the geocoder.

Runs execute in the foreground or on a single background worker; either way
only one run per orchestrator is active at a time.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..utils.errors import (
    RunAlreadyActiveError,
    RunCancelled,
    RunFailure,
    SourceUnavailableError,
)
from ..utils.pipeline_mixin import PipelineMixin
from .base import DetailSource, NameSource, RateLimiter, StationStore
from .coordinates import CoordinateReconciler
from .models import (
    PersistedStation,
    RawStationObservation,
    ReconciliationConfig,
    RunStage,
    SourceClass,
    SourceTag,
    StationGroup,
    SupplementResult,
    SyncResult,
    is_coordinate_valid,
)
from .normalizers import StationNameResolver
from .streaming import ProgressCounters, StreamingBatchProcessor
from .throttling import CancellationToken


logger = logging.getLogger(__name__)

FULL_SYNC = "full_sync"
COORDINATE_SUPPLEMENT = "coordinate_supplement"


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return "not configured"
    if len(value) <= 4:
        return "****"
    return f"{value[:4]}****"


class RunStatus:
    """Pollable, lock-protected state of the current or last run."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self._kind: Optional[str] = None
        self._stage = RunStage.IDLE
        self._error_message: Optional[str] = None
        self._started_at: Optional[datetime] = None
        self._finished_at: Optional[datetime] = None

    def begin(self, kind: str) -> None:
        with self.lock:
            self._kind = kind
            self._stage = RunStage.IDLE
            self._error_message = None
            self._started_at = datetime.now()
            self._finished_at = None

    def set_stage(self, stage: RunStage) -> None:
        with self.lock:
            self._stage = stage

    def finish(self, stage: RunStage, error_message: Optional[str] = None) -> None:
        with self.lock:
            self._stage = stage
            self._error_message = error_message
            self._finished_at = datetime.now()

    @property
    def stage(self) -> RunStage:
        with self.lock:
            return self._stage

    @property
    def error_message(self) -> Optional[str]:
        with self.lock:
            return self._error_message

    def snapshot(self) -> dict[str, Any]:
        with self.lock:
            return {
                "kind": self._kind,
                "stage": self._stage.value,
                "error_message": self._error_message,
                "started_at": self._started_at,
                "finished_at": self._finished_at,
            }


class RunHandle:
    """Handle on a background run: poll its status, wait for it or cancel it."""

    def __init__(
        self,
        future: "Future[Any]",
        token: CancellationToken,
        snapshot_fn: Callable[[], dict[str, Any]],
    ):
        self.future = future
        self.token = token
        self._snapshot_fn = snapshot_fn

    def cancel(self) -> None:
        self.token.cancel()

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> Any:
        return self.future.result(timeout=timeout)

    @property
    def status(self) -> dict[str, Any]:
        return self._snapshot_fn()


class ReconciliationOrchestrator(PipelineMixin):
    """
    Drives full syncs and coordinate supplement runs.

    Every collaborator is injected. Source failures on a single request are
    logged and treated as empty results; anything else stops the run with
    RunStage.ERROR and leaves already persisted rows in place.
    """

    MODALITY = "station sync"

    def __init__(
        self,
        name_source: NameSource,
        detail_source: DetailSource,
        store: StationStore,
        reconciler: CoordinateReconciler,
        resolver: Optional[StationNameResolver] = None,
        rate_limiter: Optional[RateLimiter] = None,
        streaming: Optional[StreamingBatchProcessor] = None,
        config: Optional[ReconciliationConfig] = None,
        show_progress: bool = True,
    ):
        self.config = config or ReconciliationConfig()
        self.name_source = name_source
        self.detail_source = detail_source
        self.store = store
        self.reconciler = reconciler
        self.resolver = resolver or reconciler.resolver
        self.rate_limiter = rate_limiter or reconciler.rate_limiter
        self.streaming = streaming or StreamingBatchProcessor(page_size=self.config.stream_page_size)
        self.show_progress = show_progress

        self.status = RunStatus()
        self.stage_progress = ProgressCounters()
        self._run_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="station-sync")
        self._last_result: Optional[Any] = None

    # ------------------------------------------------------------------
    # Pipeline definition
    # ------------------------------------------------------------------

    def _load_pipeline(
        self,
        mode: str,
        cancel_token: CancellationToken,
        result: Any,
        page_size: Optional[int] = None,
    ):
        if mode == COORDINATE_SUPPLEMENT:
            return [
                (RunStage.SUPPLEMENTING, self._supplement,
                 {"cancel_token": cancel_token, "result": result, "page_size": page_size}),
            ]
        return [
            (RunStage.COLLECTING_NAMES, self._collect_names,
             {"cancel_token": cancel_token, "result": result}),
            (RunStage.FETCHING_DETAILS, self._fetch_details,
             {"cancel_token": cancel_token, "result": result}),
            (RunStage.GROUPING, self._group, {"result": result}),
            (RunStage.ENRICHING_COORDINATES, self._enrich,
             {"cancel_token": cancel_token, "result": result}),
            (RunStage.PERSISTING, self._persist,
             {"cancel_token": cancel_token, "result": result}),
        ]

    def _on_stage_start(self, stage: RunStage) -> None:
        logger.info(f"Stage {stage.value} started")
        self.stage_progress.reset()
        self.status.set_stage(stage)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _collect_names(
        self,
        cancel_token: CancellationToken,
        result: SyncResult,
    ) -> Tuple[List[str], List[RawStationObservation]]:
        size = self.config.name_page_size
        names: List[str] = []
        seen: set[str] = set()
        observations: List[RawStationObservation] = []

        for page_index in range(self.config.max_name_pages):
            offset = page_index * size
            self.rate_limiter.acquire(SourceClass.NAME_REGISTRY, cancel_token)
            try:
                page = self.name_source.list_names(offset, size)
            except SourceUnavailableError as e:
                logger.warning(f"Skipping name page at offset {offset}: {e}")
                continue
            except Exception as e:
                logger.error(f"Unexpected error reading name page at offset {offset}: {e!r}")
                continue

            if not page:
                break
            for observation in page:
                name = observation.name.strip() if observation.name else ""
                if not name:
                    continue
                observations.append(observation)
                if name not in seen:
                    seen.add(name)
                    names.append(name)
            if len(page) < size:
                break

        result.names_collected = len(names)
        logger.info(f"Collected {len(names)} unique station names")
        return names, observations

    def _lookup_details(self, name: str, cancel_token: CancellationToken) -> List[RawStationObservation]:
        self.rate_limiter.acquire(SourceClass.DETAIL_REGISTRY, cancel_token)
        try:
            details = self.detail_source.lookup_by_name(name)
        except SourceUnavailableError as e:
            logger.warning(f"Detail lookup failed for {name}: {e}")
            details = []
        except Exception as e:
            logger.error(f"Unexpected error looking up details for {name}: {e!r}")
            details = []
        self.stage_progress.record(bool(details))
        return details

    def _fetch_details(
        self,
        collected: Tuple[List[str], List[RawStationObservation]],
        cancel_token: CancellationToken,
        result: SyncResult,
    ) -> Tuple[List[RawStationObservation], List[RawStationObservation]]:
        names, name_observations = collected
        total = len(names)
        self.stage_progress.reset(total)
        step = max(1, total // 10)
        per_name: List[List[RawStationObservation]] = [[] for _ in names]

        with ThreadPoolExecutor(max_workers=self.config.detail_concurrency) as pool:
            futures = {
                pool.submit(self._lookup_details, name, cancel_token): index
                for index, name in enumerate(names)
            }
            for done, future in enumerate(as_completed(futures), start=1):
                per_name[futures[future]] = future.result()
                if done % step == 0 or done == total:
                    logger.info(f"Detail lookups: {done}/{total} ({done / total * 100:.0f}%)")

        details = [observation for found in per_name for observation in found]
        result.detail_records = len(details)
        return name_observations, details

    def _group(
        self,
        fetched: Tuple[List[RawStationObservation], List[RawStationObservation]],
        result: SyncResult,
    ) -> List[StationGroup]:
        name_observations, details = fetched
        groups: Dict[str, StationGroup] = {}

        def add(observation: RawStationObservation, region: Optional[str]) -> None:
            standardized = self.resolver.standardize(observation.name, region, observation.city)
            group = groups.get(standardized.canonical_name)
            if group is None:
                group = StationGroup(canonical_name=standardized.canonical_name, standardized=standardized)
                groups[standardized.canonical_name] = group
            group.add(observation)

        for observation in name_observations:
            add(observation, observation.region or self.config.name_registry_region)
        for observation in details:
            add(observation, observation.region)

        result.groups_created = len(groups)
        logger.info(f"Built {len(groups)} station groups")
        return list(groups.values())

    def _enrich_group(self, group: StationGroup, cancel_token: CancellationToken) -> bool:
        cancel_token.raise_if_cancelled()
        known = self.reconciler.determine_group_coordinate(group.known_coordinates())
        if known.is_valid():
            group.set_representative_coordinate(known)
            self.stage_progress.record(True)
            return True

        standardized = group.standardized
        supplemented = self.reconciler.supplement_coordinate(
            standardized.clean_name,
            standardized.region,
            standardized.city,
            cancel_token=cancel_token,
        )
        if supplemented.is_valid():
            group.set_representative_coordinate(supplemented)
            self.stage_progress.record(True)
            return True

        logger.debug(f"No coordinate found for {group.canonical_name} ({group.line_names_text()})")
        self.stage_progress.record(False)
        return False

    def _enrich(
        self,
        groups: List[StationGroup],
        cancel_token: CancellationToken,
        result: SyncResult,
    ) -> List[StationGroup]:
        self.stage_progress.reset(len(groups))
        enriched = 0
        with ThreadPoolExecutor(max_workers=self.config.enrich_concurrency) as pool:
            futures = {pool.submit(self._enrich_group, group, cancel_token): group for group in groups}
            for future in as_completed(futures):
                try:
                    if future.result():
                        enriched += 1
                except RunCancelled:
                    raise
                except Exception as e:
                    logger.error(f"Enrichment failed for {futures[future].canonical_name}: {e!r}")
                    self.stage_progress.record(False)

        result.coordinates_enriched = enriched
        logger.info(f"Resolved coordinates for {enriched}/{len(groups)} groups")
        return groups

    @staticmethod
    def _persisted_lines(group: StationGroup) -> List[Optional[str]]:
        """Detail-registry line labels win; otherwise every known label."""
        detail_lines = sorted({
            m.line_label for m in group.members
            if m.source_tag == SourceTag.DETAIL_REGISTRY and m.line_label
        })
        lines: List[Optional[str]] = list(detail_lines or group.available_lines())
        return lines or [None]

    @staticmethod
    def _first_city(group: StationGroup) -> Optional[str]:
        if group.standardized.city:
            return group.standardized.city
        return next((m.city for m in group.members if m.city), None)

    def _new_station(self, group: StationGroup, line_label: Optional[str]) -> PersistedStation:
        return PersistedStation(
            name=group.canonical_name,
            display_name=group.standardized.display_name,
            line_label=line_label,
            lat=group.representative_lat,
            lon=group.representative_lon,
            address=group.first_address(line_label) or group.first_address(),
            region=group.standardized.region,
            city=self._first_city(group),
            data_source=group.best_source(),
            external_id=group.first_station_id(line_label),
            coordinate_confidence=group.coordinate_confidence,
        )

    def _merge_missing(self, existing: PersistedStation, group: StationGroup, line_label: Optional[str]) -> bool:
        """Fill fields the stored row lacks. Existing values are never replaced."""
        changed = False
        if not is_coordinate_valid(existing.lat, existing.lon) and group.has_coordinate():
            existing.lat = group.representative_lat
            existing.lon = group.representative_lon
            existing.coordinate_confidence = group.coordinate_confidence
            changed = True
        if existing.address is None:
            address = group.first_address(line_label) or group.first_address()
            if address:
                existing.address = address
                changed = True
        if existing.region is None and group.standardized.region:
            existing.region = group.standardized.region
            changed = True
        if existing.city is None:
            city = self._first_city(group)
            if city:
                existing.city = city
                changed = True
        return changed

    def _persist(
        self,
        groups: List[StationGroup],
        cancel_token: CancellationToken,
        result: SyncResult,
    ) -> SyncResult:
        self.stage_progress.reset(len(groups))
        for group in groups:
            cancel_token.raise_if_cancelled()
            for line_label in self._persisted_lines(group):
                existing = self.store.find_by_canonical_name(
                    group.canonical_name, group.standardized.region, line_label
                )
                if existing is None:
                    self.store.insert(self._new_station(group, line_label))
                    result.stations_inserted += 1
                elif self._merge_missing(existing, group, line_label):
                    self.store.update(existing)
                    result.stations_updated += 1
            self.stage_progress.record(True)

        logger.info(
            f"Persisted stations: {result.stations_inserted} inserted, "
            f"{result.stations_updated} updated"
        )
        return result

    def _supplement_station(self, station: PersistedStation, cancel_token: CancellationToken) -> bool:
        coordinate = self.reconciler.supplement_coordinate(
            self.resolver.clean_name(station.name),
            station.region,
            station.city,
            cancel_token=cancel_token,
        )
        if not coordinate.is_valid() or station.id is None:
            return False
        self.store.update_coordinates(station.id, coordinate.lat, coordinate.lon)  # type: ignore[arg-type]
        return True

    def _supplement(
        self,
        cancel_token: CancellationToken,
        result: SupplementResult,
        page_size: Optional[int] = None,
    ) -> SupplementResult:
        stream = self.streaming.for_each_page(
            count_fn=self.store.count_missing_coordinates,
            fetch_page_fn=self.store.find_missing_coordinates,
            operation=lambda station: self._supplement_station(station, cancel_token),
            page_size=page_size,
            cancel_token=cancel_token,
            shrinking=True,
        )
        for _ in stream:
            pass

        progress = self.streaming.progress.snapshot()
        result.total = progress["total"]
        result.success = progress["success"]
        result.failure = progress["failure"]
        logger.info(
            f"Coordinate supplement: {result.success}/{result.total} filled "
            f"({result.success_rate:.1f}%)"
        )
        return result

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def _run(
        self,
        mode: str,
        cancel_token: CancellationToken,
        result: Any,
        page_size: Optional[int] = None,
    ) -> Any:
        try:
            self._execute_pipeline(
                progress=self.show_progress,
                mode=mode,
                cancel_token=cancel_token,
                result=result,
                page_size=page_size,
            )
        except RunCancelled as e:
            logger.warning(f"Run {mode} cancelled during {self.status.stage.value}")
            result.error_message = str(e)
            self.status.finish(RunStage.CANCELLED, str(e))
        except RunFailure as e:
            logger.error(f"Run {mode} failed: {e}")
            result.error_message = str(e)
            self.status.finish(RunStage.ERROR, str(e))
        else:
            if isinstance(result, SyncResult):
                result.success = True
            self.status.finish(RunStage.COMPLETED)
        finally:
            self._last_result = result
            self._run_lock.release()
        return result

    def _claim(self, mode: str) -> None:
        if not self._run_lock.acquire(blocking=False):
            raise RunAlreadyActiveError(f"A {self.status.snapshot()['kind']} run is already active")
        self.status.begin(mode)

    def run_full_sync(self, cancel_token: Optional[CancellationToken] = None) -> SyncResult:
        """Run a full sync in the calling thread."""
        self._claim(FULL_SYNC)
        return self._run(FULL_SYNC, cancel_token or CancellationToken(), SyncResult())

    def supplement_missing_coordinates(
        self,
        cancel_token: Optional[CancellationToken] = None,
        page_size: Optional[int] = None,
    ) -> SupplementResult:
        """Fill coordinates of stored stations that have none, in the calling thread."""
        self._claim(COORDINATE_SUPPLEMENT)
        return self._run(
            COORDINATE_SUPPLEMENT, cancel_token or CancellationToken(), SupplementResult(), page_size
        )

    def _start(self, mode: str, result: Any, page_size: Optional[int] = None) -> RunHandle:
        self._claim(mode)
        token = CancellationToken()
        try:
            future = self._executor.submit(self._run, mode, token, result, page_size)
        except RuntimeError:
            self._run_lock.release()
            raise
        return RunHandle(future, token, self.status_snapshot)

    def start_full_sync(self) -> RunHandle:
        """Start a full sync on the background worker."""
        return self._start(FULL_SYNC, SyncResult())

    def start_coordinate_supplement(self, page_size: Optional[int] = None) -> RunHandle:
        """Start a coordinate supplement run on the background worker."""
        return self._start(COORDINATE_SUPPLEMENT, SupplementResult(), page_size)

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status_snapshot(self) -> dict[str, Any]:
        snapshot = self.status.snapshot()
        if snapshot["stage"] == RunStage.SUPPLEMENTING.value:
            snapshot["progress"] = self.streaming.progress.snapshot()
        else:
            snapshot["progress"] = self.stage_progress.snapshot()
        return snapshot

    def system_status(self) -> dict[str, Any]:
        """Source configuration (keys masked), rate limiter state and last run."""
        sources = {
            "name_registry": {
                "client": type(self.name_source).__name__,
                "api_key": mask_secret(getattr(self.name_source, "api_key", None)),
            },
            "detail_registry": {
                "client": type(self.detail_source).__name__,
                "api_key": mask_secret(getattr(self.detail_source, "service_key", None)),
            },
            "geocoder": {
                "client": type(self.reconciler.geocoder).__name__ if self.reconciler.geocoder else None,
                "configured": self.reconciler.geocoder is not None,
            },
        }
        limiter_status = getattr(self.rate_limiter, "status", None)
        last = self._last_result
        return {
            "sources": sources,
            "rate_limiter": limiter_status() if callable(limiter_status) else {},
            "cache_entries": len(self.reconciler.cache),
            "run": self.status_snapshot(),
            "last_result": last.to_dict() if last is not None else None,
        }

    def close(self) -> None:
        """Stop accepting background runs and wait for the active one."""
        self._executor.shutdown(wait=True)
