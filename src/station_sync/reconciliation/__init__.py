"""
- Models: Data structures (RawStationObservation, StationGroup, CoordinateResult, ...)
- Base classes: Abstract source, store and rate limiter interfaces
- Normalizers: Station name and region standardization
- Coordinates: Coordinate clustering, validation and geocoder fallback
- Throttling: Per-source rate limiting and cancellation
- Streaming: Memory-bounded page streaming
- Clients: HTTP clients for the name registry, detail registry and geocoder
- Storage: DuckDB station store
- Orchestrator: End-to-end sync and coordinate supplement runs
"""

from .models import (
    SourceTag,
    SourceClass,
    ResolutionStatus,
    RunStage,
    SOURCE_PRIORITY,
    RawStationObservation,
    StandardizedStation,
    StationGroup,
    CoordinateCandidate,
    CoordinateCluster,
    CoordinateResult,
    CoordinateStatistics,
    PersistedStation,
    BatchProcessResult,
    SyncResult,
    SupplementResult,
    ReconciliationConfig,
    haversine_m,
    is_coordinate_empty,
    is_coordinate_valid,
    source_priority,
)

from .base import (
    NameSource,
    DetailSource,
    GeocodeSource,
    StationStore,
    RateLimiter,
)

from .normalizers import (
    StationNameResolver,
    DUPLICATE_STATION_NAMES,
    UNCLASSIFIED_REGION,
    clean_name,
)

from .throttling import (
    CancellationToken,
    SourceRateLimiter,
    NoOpRateLimiter,
    DEFAULT_INTERVALS,
)

from .coordinates import (
    CoordinateCache,
    CoordinateReconciler,
)

from .streaming import (
    ProgressCounters,
    StreamingBatchProcessor,
)

from .clients import (
    SeoulNameRegistryClient,
    MolitDetailClient,
    NominatimGeocoder,
)

from .storage import (
    DuckDBStationStore,
)

from .orchestrator import (
    ReconciliationOrchestrator,
    RunHandle,
    RunStatus,
)

__all__ = [
    # Models
    "SourceTag",
    "SourceClass",
    "ResolutionStatus",
    "RunStage",
    "SOURCE_PRIORITY",
    "RawStationObservation",
    "StandardizedStation",
    "StationGroup",
    "CoordinateCandidate",
    "CoordinateCluster",
    "CoordinateResult",
    "CoordinateStatistics",
    "PersistedStation",
    "BatchProcessResult",
    "SyncResult",
    "SupplementResult",
    "ReconciliationConfig",
    "haversine_m",
    "is_coordinate_empty",
    "is_coordinate_valid",
    "source_priority",
    # Base classes
    "NameSource",
    "DetailSource",
    "GeocodeSource",
    "StationStore",
    "RateLimiter",
    # Normalizers
    "StationNameResolver",
    "DUPLICATE_STATION_NAMES",
    "UNCLASSIFIED_REGION",
    "clean_name",
    # Throttling
    "CancellationToken",
    "SourceRateLimiter",
    "NoOpRateLimiter",
    "DEFAULT_INTERVALS",
    # Coordinates
    "CoordinateCache",
    "CoordinateReconciler",
    # Streaming
    "ProgressCounters",
    "StreamingBatchProcessor",
    # Clients
    "SeoulNameRegistryClient",
    "MolitDetailClient",
    "NominatimGeocoder",
    # Storage
    "DuckDBStationStore",
    # Orchestrator
    "ReconciliationOrchestrator",
    "RunHandle",
    "RunStatus",
]
