"""Radius search over provider positions.

``SqliteRTreeGeoIndex`` keeps every position in an SQLite R*Tree virtual
table. A radius query first selects the entries whose point falls inside the
bounding box of the search circle (an index lookup), then refines the
candidates with the exact great-circle distance. No query ever scans every
stored position.
"""

import logging
import math
import sqlite3
from pathlib import Path
from threading import Lock
from typing import Callable, List, Optional, Protocol, Tuple

from carelink.errors import GeospatialQueryError, ValidationError

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6371000.0

# R*Tree coordinates are stored as 32-bit floats; widen every box by a few
# metres so rounding can never push a real match outside the prefilter.
BOUNDING_BOX_PADDING_DEGREES = 1e-4

GeoPoint = Tuple[float, float]
EntityPredicate = Callable[[str], bool]


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def validate_point(lat: float, lng: float) -> None:
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise ValidationError("Coordinates must be finite numbers", {"lat": lat, "lng": lng})
    if not -90 <= lat <= 90:
        raise ValidationError("Latitude must be between -90 and 90", {"lat": lat})
    if not -180 <= lng <= 180:
        raise ValidationError("Longitude must be between -180 and 180", {"lng": lng})


def bounding_box(lat: float, lng: float, radius_meters: float) -> Tuple[float, float, float, float]:
    """Return (min_lat, max_lat, min_lng, max_lng) enclosing the search circle."""
    angular = math.degrees(radius_meters / EARTH_RADIUS_METERS)
    min_lat = lat - angular - BOUNDING_BOX_PADDING_DEGREES
    max_lat = lat + angular + BOUNDING_BOX_PADDING_DEGREES
    if min_lat <= -90 or max_lat >= 90:
        # The circle touches a pole: every longitude is in play.
        return max(min_lat, -90.0), min(max_lat, 90.0), -180.0, 180.0
    cos_lat = math.cos(math.radians(max(abs(min_lat), abs(max_lat))))
    lng_delta = angular / cos_lat + BOUNDING_BOX_PADDING_DEGREES
    return min_lat, max_lat, lng - lng_delta, lng + lng_delta


class GeoIndex(Protocol):
    def upsert(self, entity_id: str, lat: float, lng: float) -> None: ...

    def remove(self, entity_id: str) -> None: ...

    def find_within(
        self,
        point: GeoPoint,
        radius_meters: float,
        predicate: Optional[EntityPredicate] = None,
    ) -> List[Tuple[str, float]]: ...


class SqliteRTreeGeoIndex:
    def __init__(self, db_path: str, timeout: float = 5.0) -> None:
        self._lock = Lock()
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self.timeout = timeout
        self.available = False
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        try:
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS geo_entities (
                            id INTEGER PRIMARY KEY AUTOINCREMENT,
                            entity_id TEXT NOT NULL UNIQUE,
                            latitude REAL NOT NULL,
                            longitude REAL NOT NULL
                        )
                        """
                    )
                    conn.execute(
                        """
                        CREATE VIRTUAL TABLE IF NOT EXISTS geo_rtree USING rtree(
                            id,
                            min_lat, max_lat,
                            min_lng, max_lng
                        )
                        """
                    )
                    conn.commit()
            self.available = True
        except sqlite3.Error:
            logger.exception("Spatial index disabled: could not create R*Tree tables")

    def _require_available(self) -> None:
        if not self.available:
            raise GeospatialQueryError("Spatial index unavailable")

    def upsert(self, entity_id: str, lat: float, lng: float) -> None:
        validate_point(lat, lng)
        self._require_available()
        try:
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        """
                        INSERT INTO geo_entities (entity_id, latitude, longitude) VALUES (?, ?, ?)
                        ON CONFLICT(entity_id) DO UPDATE SET latitude = excluded.latitude, longitude = excluded.longitude
                        """,
                        (entity_id, lat, lng),
                    )
                    row = conn.execute("SELECT id FROM geo_entities WHERE entity_id = ?", (entity_id,)).fetchone()
                    conn.execute(
                        "INSERT OR REPLACE INTO geo_rtree (id, min_lat, max_lat, min_lng, max_lng) VALUES (?, ?, ?, ?, ?)",
                        (row["id"], lat, lat, lng, lng),
                    )
                    conn.commit()
        except sqlite3.Error as exc:
            raise GeospatialQueryError("Failed to update spatial index", {"entity_id": entity_id}) from exc

    def remove(self, entity_id: str) -> None:
        self._require_available()
        try:
            with self._lock:
                with self._connect() as conn:
                    row = conn.execute("SELECT id FROM geo_entities WHERE entity_id = ?", (entity_id,)).fetchone()
                    if not row:
                        return
                    conn.execute("DELETE FROM geo_rtree WHERE id = ?", (row["id"],))
                    conn.execute("DELETE FROM geo_entities WHERE id = ?", (row["id"],))
                    conn.commit()
        except sqlite3.Error as exc:
            raise GeospatialQueryError("Failed to update spatial index", {"entity_id": entity_id}) from exc

    def find_within(
        self,
        point: GeoPoint,
        radius_meters: float,
        predicate: Optional[EntityPredicate] = None,
    ) -> List[Tuple[str, float]]:
        """Entities within ``radius_meters`` (inclusive) of ``point``, nearest first."""
        lat, lng = point
        try:
            validate_point(lat, lng)
        except ValidationError as exc:
            raise GeospatialQueryError("Malformed coordinates for spatial query", exc.details) from exc
        if not math.isfinite(radius_meters) or radius_meters <= 0:
            raise GeospatialQueryError("Search radius must be a positive number", {"radius_meters": radius_meters})
        self._require_available()

        min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_meters)
        ranges = [(min_lng, max_lng)]
        # Split boxes that wrap the antimeridian.
        if min_lng < -180:
            ranges = [(min_lng + 360, 180.0), (-180.0, max_lng)]
        elif max_lng > 180:
            ranges = [(min_lng, 180.0), (-180.0, max_lng - 360)]

        try:
            with self._connect() as conn:
                rows = []
                for range_min, range_max in ranges:
                    rows.extend(
                        conn.execute(
                            """
                            SELECT e.entity_id, e.latitude, e.longitude
                            FROM geo_rtree r
                            JOIN geo_entities e ON e.id = r.id
                            WHERE r.max_lat >= ? AND r.min_lat <= ?
                              AND r.max_lng >= ? AND r.min_lng <= ?
                            """,
                            (min_lat, max_lat, range_min, range_max),
                        ).fetchall()
                    )
        except sqlite3.Error as exc:
            logger.exception("Spatial query failed lat=%s lng=%s radius_m=%s", lat, lng, radius_meters)
            raise GeospatialQueryError(
                "Failed to execute provider matching query",
                {"lat": lat, "lng": lng, "radius_meters": radius_meters},
            ) from exc

        hits: dict[str, float] = {}
        for row in rows:
            entity_id = str(row["entity_id"])
            if predicate is not None and not predicate(entity_id):
                continue
            distance = haversine_meters(lat, lng, float(row["latitude"]), float(row["longitude"]))
            if distance <= radius_meters:
                hits[entity_id] = distance
        return sorted(hits.items(), key=lambda item: (item[1], item[0]))
