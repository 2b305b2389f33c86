"""
Location service — helper positions and the "nearest available helpers"
spatial query the dispatcher relies on.

On PostgreSQL the query runs through PostGIS (``ST_DWithin`` over a GiST
geography index). Other databases get a bounding-box prefilter in SQL and
an exact haversine check in Python.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from geoalchemy2 import Geography
from sqlalchemy import select, func, cast, and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifeline.db.postgres import async_session
from lifeline.models.helper_location import HelperLocation
from lifeline.models.emergency import utcnow
from lifeline.services.emergency_policy import bounding_boxes, haversine_distance
from lifeline.services.errors import CollaboratorError

logger = logging.getLogger(__name__)


@dataclass
class NearbyHelper:
    helper_id: str
    longitude: float
    latitude: float
    distance_m: float


class GeoIndex(Protocol):
    async def find_nearby_helpers(
        self,
        point: tuple[float, float],
        radius_m: float,
        exclude_ids: list[str],
        limit: int,
    ) -> list[NearbyHelper]:
        ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _is_postgis(db: AsyncSession) -> bool:
    return db.get_bind().dialect.name == "postgresql"


def _make_geog(longitude, latitude):
    """PostGIS geography expression for a lon/lat pair (columns or literals)."""
    return cast(func.ST_SetSRID(func.ST_MakePoint(longitude, latitude), 4326), Geography)


def within_bounding_boxes(lon_col, lat_col, point: tuple[float, float], radius_m: float):
    """SQL prefilter: the row lies in one of the boxes enclosing the search circle."""
    return or_(*(
        and_(lon_col.between(min_lon, max_lon), lat_col.between(min_lat, max_lat))
        for min_lon, min_lat, max_lon, max_lat in bounding_boxes(point, radius_m)
    ))


def _location_to_dict(loc: HelperLocation) -> dict[str, Any]:
    return {
        "helper_id": loc.helper_id,
        "latitude": loc.latitude,
        "longitude": loc.longitude,
        "accuracy": loc.accuracy,
        "is_available": loc.is_available,
        "updated_at": loc.updated_at.isoformat() if loc.updated_at else None,
    }


# ---------------------------------------------------------------------------
# Helper positions
# ---------------------------------------------------------------------------

async def update_helper_location(
    db: AsyncSession,
    helper_id: str,
    *,
    latitude: float,
    longitude: float,
    accuracy: float | None = None,
    is_available: bool | None = None,
) -> dict[str, Any]:
    """Create or update the helper's current position."""
    result = await db.execute(select(HelperLocation).where(HelperLocation.helper_id == str(helper_id)))
    loc = result.scalar_one_or_none()
    if loc is None:
        loc = HelperLocation(
            helper_id=str(helper_id),
            latitude=latitude,
            longitude=longitude,
            accuracy=accuracy,
            is_available=True if is_available is None else is_available,
        )
        db.add(loc)
    else:
        loc.latitude = latitude
        loc.longitude = longitude
        loc.accuracy = accuracy
        if is_available is not None:
            loc.is_available = is_available
    loc.updated_at = utcnow()

    await db.flush()
    logger.info("Helper %s location -> (%s, %s) available=%s", helper_id, latitude, longitude, loc.is_available)
    return _location_to_dict(loc)


async def get_helper_location(db: AsyncSession, helper_id: str) -> dict[str, Any] | None:
    result = await db.execute(select(HelperLocation).where(HelperLocation.helper_id == str(helper_id)))
    loc = result.scalar_one_or_none()
    return _location_to_dict(loc) if loc else None


# ---------------------------------------------------------------------------
# Spatial: nearest available helpers
# ---------------------------------------------------------------------------

async def find_nearby_helpers(
    db: AsyncSession,
    point: tuple[float, float],
    radius_m: float,
    *,
    exclude_ids: list[str] | None = None,
    limit: int = 10,
) -> list[NearbyHelper]:
    """Available helpers within *radius_m* of *point* (lon, lat), nearest first."""
    exclude = [str(i) for i in (exclude_ids or [])]
    if limit <= 0:
        return []

    if _is_postgis(db):
        return await _find_nearby_postgis(db, point, radius_m, exclude, limit)
    return await _find_nearby_scan(db, point, radius_m, exclude, limit)


async def _find_nearby_postgis(db, point, radius_m, exclude, limit) -> list[NearbyHelper]:
    longitude, latitude = point
    centre = _make_geog(longitude, latitude)
    helper_geog = _make_geog(HelperLocation.longitude, HelperLocation.latitude)
    distance_expr = func.ST_Distance(helper_geog, centre).label("distance_m")

    query = (
        select(HelperLocation, distance_expr)
        .where(
            HelperLocation.is_available.is_(True),
            func.ST_DWithin(helper_geog, centre, radius_m),
        )
        .order_by(distance_expr)
        .limit(limit)
    )
    if exclude:
        query = query.where(HelperLocation.helper_id.notin_(exclude))

    result = await db.execute(query)
    return [
        NearbyHelper(
            helper_id=loc.helper_id,
            longitude=loc.longitude,
            latitude=loc.latitude,
            distance_m=round(distance, 1) if distance is not None else None,
        )
        for loc, distance in result.all()
    ]


async def _find_nearby_scan(db, point, radius_m, exclude, limit) -> list[NearbyHelper]:
    query = select(HelperLocation).where(
        HelperLocation.is_available.is_(True),
        within_bounding_boxes(HelperLocation.longitude, HelperLocation.latitude, point, radius_m),
    )
    if exclude:
        query = query.where(HelperLocation.helper_id.notin_(exclude))

    result = await db.execute(query)
    candidates = []
    for loc in result.scalars().all():
        distance = haversine_distance(point, (loc.longitude, loc.latitude))
        if distance <= radius_m:
            candidates.append(NearbyHelper(
                helper_id=loc.helper_id,
                longitude=loc.longitude,
                latitude=loc.latitude,
                distance_m=round(distance, 1),
            ))

    candidates.sort(key=lambda h: h.distance_m)
    return candidates[:limit]


class SqlGeoIndex:
    """GeoIndex backed by the ``helper_locations`` table.

    Every query opens its own session from *session_factory*. A query
    cancelled on timeout then never leaves the caller's session or
    connection mid-statement.
    """

    def __init__(self, session_factory: async_sessionmaker = async_session):
        self.session_factory = session_factory

    async def find_nearby_helpers(self, point, radius_m, exclude_ids, limit) -> list[NearbyHelper]:
        try:
            async with self.session_factory() as session:
                return await find_nearby_helpers(session, point, radius_m, exclude_ids=exclude_ids, limit=limit)
        except SQLAlchemyError as exc:
            raise CollaboratorError(f"Helper location query failed: {exc}") from exc


def get_geo_index() -> GeoIndex:
    """FastAPI dependency; overridden in tests."""
    return SqlGeoIndex(async_session)
