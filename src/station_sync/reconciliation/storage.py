"""
DuckDB persistence for reconciled stations.

One row per (canonical name, region, line). `has_coordinates` is recomputed
from the coordinate on every write.
"""

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import duckdb
import pandas as pd

from .base import StationStore
from .models import CoordinateStatistics, PersistedStation, is_coordinate_valid


logger = logging.getLogger(__name__)

_COLUMNS = (
    "id", "name", "display_name", "line_label", "lat", "lon", "address",
    "region", "city", "data_source", "external_id", "coordinate_confidence",
    "created_at", "updated_at",
)
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM stations"


class DuckDBStationStore(StationStore):
    """
    DuckDB-backed station store.

    Access to the connection is serialized with a lock so the store can be
    shared by worker threads.
    """

    DDL_SEQUENCE = "CREATE SEQUENCE IF NOT EXISTS stations_id_seq START 1;"

    DDL_STATIONS = """
    CREATE TABLE IF NOT EXISTS stations (
        id BIGINT PRIMARY KEY DEFAULT nextval('stations_id_seq'),
        name TEXT NOT NULL,
        display_name TEXT,
        line_label TEXT,
        lat DOUBLE,
        lon DOUBLE,
        address TEXT,
        region TEXT,
        city TEXT,
        data_source TEXT,
        external_id TEXT,
        has_coordinates BOOLEAN NOT NULL DEFAULT FALSE,
        coordinate_confidence INTEGER,
        created_at TIMESTAMP,
        updated_at TIMESTAMP
    );
    """

    def __init__(self, db_path: Path | str = ":memory:"):
        """
        Initialize DuckDB storage.

        Args:
            db_path: Path to DuckDB database file, or ":memory:"
        """
        if str(db_path) == ":memory:":
            self.db_path = None
            self.con = duckdb.connect(":memory:")
        else:
            self.db_path = Path(db_path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.con = duckdb.connect(str(self.db_path))
        self.lock = threading.Lock()
        self.con.execute(self.DDL_SEQUENCE)
        self.con.execute(self.DDL_STATIONS)
        logger.info(f"Initialized DuckDB station store: {self.db_path or ':memory:'}")

    @staticmethod
    def _row_to_station(row: tuple) -> PersistedStation:
        values = dict(zip(_COLUMNS, row))
        return PersistedStation(**values)

    def _fetch(self, sql: str, params: Optional[list] = None) -> List[PersistedStation]:
        with self.lock:
            rows = self.con.execute(sql, params or []).fetchall()
        return [self._row_to_station(r) for r in rows]

    def _scalar(self, sql: str, params: Optional[list] = None) -> int:
        with self.lock:
            result = self.con.execute(sql, params or []).fetchone()
        return int(result[0]) if result and result[0] is not None else 0

    def find_by_canonical_name(
        self,
        name: str,
        region: Optional[str],
        line_label: Optional[str],
    ) -> Optional[PersistedStation]:
        rows = self._fetch(
            f"""
            {_SELECT}
            WHERE name = ?
              AND region IS NOT DISTINCT FROM ?
              AND line_label IS NOT DISTINCT FROM ?
            ORDER BY id
            LIMIT 1
            """,
            [name, region, line_label],
        )
        return rows[0] if rows else None

    def get(self, station_id: int) -> Optional[PersistedStation]:
        rows = self._fetch(f"{_SELECT} WHERE id = ?", [station_id])
        return rows[0] if rows else None

    def find_missing_coordinates(self, offset: int, limit: int) -> List[PersistedStation]:
        return self._fetch(
            f"{_SELECT} WHERE has_coordinates = false ORDER BY name, line_label, id LIMIT ? OFFSET ?",
            [limit, offset],
        )

    def count_missing_coordinates(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM stations WHERE has_coordinates = false")

    def find_page(self, offset: int, limit: int) -> List[PersistedStation]:
        return self._fetch(f"{_SELECT} ORDER BY id LIMIT ? OFFSET ?", [limit, offset])

    def count_all(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM stations")

    def insert(self, station: PersistedStation) -> PersistedStation:
        now = datetime.now()
        with self.lock:
            row = self.con.execute(
                """
                INSERT INTO stations
                (name, display_name, line_label, lat, lon, address, region, city,
                 data_source, external_id, has_coordinates, coordinate_confidence,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                [
                    station.name,
                    station.display_name,
                    station.line_label,
                    station.lat,
                    station.lon,
                    station.address,
                    station.region,
                    station.city,
                    station.data_source,
                    station.external_id,
                    is_coordinate_valid(station.lat, station.lon),
                    station.coordinate_confidence,
                    now,
                    now,
                ],
            ).fetchone()
        station.id = int(row[0])
        station.created_at = now
        station.updated_at = now
        return station

    def update(self, station: PersistedStation) -> PersistedStation:
        if station.id is None:
            raise ValueError(f"Cannot update station '{station.name}' without an id")
        now = datetime.now()
        with self.lock:
            self.con.execute(
                """
                UPDATE stations SET
                    name = ?, display_name = ?, line_label = ?, lat = ?, lon = ?,
                    address = ?, region = ?, city = ?, data_source = ?, external_id = ?,
                    has_coordinates = ?, coordinate_confidence = ?, updated_at = ?
                WHERE id = ?
                """,
                [
                    station.name,
                    station.display_name,
                    station.line_label,
                    station.lat,
                    station.lon,
                    station.address,
                    station.region,
                    station.city,
                    station.data_source,
                    station.external_id,
                    is_coordinate_valid(station.lat, station.lon),
                    station.coordinate_confidence,
                    now,
                    station.id,
                ],
            )
        station.updated_at = now
        return station

    def update_coordinates(self, station_id: int, lat: float, lon: float) -> None:
        with self.lock:
            self.con.execute(
                """
                UPDATE stations
                SET lat = ?, lon = ?, has_coordinates = ?, updated_at = ?
                WHERE id = ?
                """,
                [lat, lon, is_coordinate_valid(lat, lon), datetime.now(), station_id],
            )

    def coordinate_statistics(self) -> CoordinateStatistics:
        total = self.count_all()
        missing = self.count_missing_coordinates()
        return CoordinateStatistics(
            total=total,
            has_coordinates=total - missing,
            missing_coordinates=missing,
        )

    def export_missing_to_csv(self, csv_path: Path | str) -> int:
        """
        Export stations still missing coordinates to CSV.

        Args:
            csv_path: Path to output CSV file

        Returns:
            Number of stations exported
        """
        csv_path = Path(csv_path)
        with self.lock:
            missing_df: pd.DataFrame = self.con.execute(
                f"{_SELECT} WHERE has_coordinates = false ORDER BY name, line_label, id"
            ).df()

        if len(missing_df) > 0:
            csv_path.parent.mkdir(parents=True, exist_ok=True)
            missing_df.to_csv(csv_path, index=False)
            logger.info(f"Exported {len(missing_df)} stations without coordinates to {csv_path}")

        return len(missing_df)

    def get_summary(self) -> Dict[str, Any]:
        """Get summary statistics."""
        stats = self.coordinate_statistics()
        with self.lock:
            by_source = self.con.execute(
                "SELECT data_source, COUNT(*) FROM stations GROUP BY data_source ORDER BY data_source"
            ).fetchall()
            by_region = self.con.execute(
                "SELECT region, COUNT(*) FROM stations GROUP BY region ORDER BY region"
            ).fetchall()

        return {
            'total': stats.total,
            'has_coordinates': stats.has_coordinates,
            'missing_coordinates': stats.missing_coordinates,
            'completion_rate': round(stats.completion_rate, 1),
            'by_source': {source: count for source, count in by_source},
            'by_region': {region: count for region, count in by_region},
        }

    def close(self) -> None:
        """Close database connection."""
        if self.con:
            self.con.close()
            logger.info("Closed DuckDB connection")
