"""
Abstract base classes for the reconciliation system.

These define the interfaces that source clients, stores and rate limiters
must follow. The orchestrator only ever talks to these interfaces.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional, List

from .models import (
    CoordinateCandidate,
    PersistedStation,
    RawStationObservation,
    SourceClass,
)

if TYPE_CHECKING:
    from .throttling import CancellationToken


class NameSource(ABC):
    """
    Paginated station name registry (source A).

    Returns observations that usually carry only a name and a line label.
    """

    @abstractmethod
    def list_names(self, offset: int, limit: int) -> List[RawStationObservation]:
        """
        Fetch one page of station names.

        Args:
            offset: Zero-based index of the first record
            limit: Maximum number of records to return

        Returns:
            Observations for the page (empty when exhausted)

        Raises:
            SourceUnavailableError: the page could not be fetched
        """
        pass


class DetailSource(ABC):
    """
    Detail registry keyed by station name (source B).

    One name can map to several observations: one per line and possibly
    one per city sharing the same name.
    """

    @abstractmethod
    def lookup_by_name(self, name: str) -> List[RawStationObservation]:
        """
        Look up detailed records for a station name.

        Raises:
            SourceUnavailableError: the lookup failed
        """
        pass


class GeocodeSource(ABC):
    """Free-text geocoder (source C)."""

    @abstractmethod
    def search(self, query: str) -> Optional[CoordinateCandidate]:
        """
        Search for the best coordinate matching a free-text query.

        Returns:
            Best candidate, or None when nothing matched

        Raises:
            SourceUnavailableError: the search failed
        """
        pass


class StationStore(ABC):
    """
    Persistence contract for reconciled stations.

    Implementations must keep `has_coordinates` in sync with the stored
    coordinate on every write.
    """

    @abstractmethod
    def find_by_canonical_name(
        self,
        name: str,
        region: Optional[str],
        line_label: Optional[str],
    ) -> Optional[PersistedStation]:
        pass

    @abstractmethod
    def find_missing_coordinates(self, offset: int, limit: int) -> List[PersistedStation]:
        """Stations without a valid coordinate, in stable order."""
        pass

    @abstractmethod
    def count_missing_coordinates(self) -> int:
        pass

    @abstractmethod
    def find_page(self, offset: int, limit: int) -> List[PersistedStation]:
        pass

    @abstractmethod
    def count_all(self) -> int:
        pass

    @abstractmethod
    def insert(self, station: PersistedStation) -> PersistedStation:
        """Insert a new station and return it with its id assigned."""
        pass

    @abstractmethod
    def update(self, station: PersistedStation) -> PersistedStation:
        pass

    @abstractmethod
    def update_coordinates(self, station_id: int, lat: float, lon: float) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        """Close connections/cleanup resources."""
        pass


class RateLimiter(ABC):
    """
    Abstract base for per-source rate limiters.

    Rate limiters enforce a minimum interval between requests of the same
    source class, independently per class.
    """

    @abstractmethod
    def acquire(
        self,
        source_class: SourceClass,
        cancel_token: Optional["CancellationToken"] = None,
    ) -> None:
        """
        Block until a request to `source_class` may be issued.

        Raises:
            RunCancelled: the token was cancelled while waiting
        """
        pass
