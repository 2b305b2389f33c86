"""
Emergency record store — persistence and queries for the Emergency aggregate.

Returns ORM objects; serialisation lives in the lifecycle service. ``save``
flushes with the version check, so a lost race surfaces here as
``sqlalchemy.orm.exc.StaleDataError``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from geoalchemy2 import Geography
from sqlalchemy import select, func, delete, cast
from sqlalchemy.ext.asyncio import AsyncSession

from lifeline.models.emergency import (
    Emergency, EmergencyAssignment, EmergencyLogEntry, EmergencyStatus, EmergencyType, AssignmentStatus, utcnow,
)
from lifeline.services.emergency_policy import haversine_distance, has_timed_out, DEFAULT_SETTINGS
from lifeline.services.location_service import within_bounding_boxes

logger = logging.getLogger(__name__)


def parse_emergency_id(emergency_id: Any) -> uuid.UUID | None:
    if isinstance(emergency_id, uuid.UUID):
        return emergency_id
    try:
        return uuid.UUID(str(emergency_id))
    except (TypeError, ValueError):
        return None


def _is_postgis(db: AsyncSession) -> bool:
    return db.get_bind().dialect.name == "postgresql"


# ---------------------------------------------------------------------------
# Create / load / save
# ---------------------------------------------------------------------------

async def create_emergency_record(db: AsyncSession, emergency: Emergency) -> Emergency:
    emergency.recompute_counters()
    db.add(emergency)
    await db.flush()
    return emergency


async def get_emergency_by_id(db: AsyncSession, emergency_id: Any, *, refresh: bool = False) -> Emergency | None:
    """Load one emergency with its assignments and log.

    ``refresh=True`` overwrites any stale in-session state with the row as
    it is now in the database.
    """
    parsed = parse_emergency_id(emergency_id)
    if parsed is None:
        return None

    query = select(Emergency).where(Emergency.id == parsed)
    if refresh:
        query = query.execution_options(populate_existing=True)
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def save_emergency(db: AsyncSession, emergency: Emergency, now: datetime | None = None) -> Emergency:
    emergency.recompute_counters()
    emergency.updated_at = now or utcnow()
    await db.flush()
    return emergency


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def find_by_owner(
    db: AsyncSession,
    owner_id: str,
    *,
    status: EmergencyStatus | None = None,
    emergency_type: EmergencyType | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[Emergency]:
    query = select(Emergency).where(Emergency.owner_id == str(owner_id))
    if status:
        query = query.where(Emergency.status == status)
    if emergency_type:
        query = query.where(Emergency.type == emergency_type)
    query = query.order_by(Emergency.created_at.desc()).offset(offset).limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())


async def find_near(
    db: AsyncSession,
    point: tuple[float, float],
    radius_m: float,
    *,
    status: EmergencyStatus = EmergencyStatus.ACTIVE,
) -> list[tuple[Emergency, float]]:
    """Emergencies within *radius_m* of *point* (lon, lat) with their distance."""
    longitude, latitude = point

    if _is_postgis(db):
        centre = cast(func.ST_SetSRID(func.ST_MakePoint(longitude, latitude), 4326), Geography)
        row_geog = cast(
            func.ST_SetSRID(func.ST_MakePoint(Emergency.longitude, Emergency.latitude), 4326), Geography,
        )
        distance_expr = func.ST_Distance(row_geog, centre).label("distance_m")
        query = (
            select(Emergency, distance_expr)
            .where(Emergency.status == status, func.ST_DWithin(row_geog, centre, radius_m))
            .order_by(distance_expr)
        )
        result = await db.execute(query)
        return [(e, float(d)) for e, d in result.all()]

    query = select(Emergency).where(
        Emergency.status == status,
        within_bounding_boxes(Emergency.longitude, Emergency.latitude, point, radius_m),
    )
    result = await db.execute(query)

    matches = []
    for emergency in result.scalars().all():
        distance = haversine_distance(point, emergency.coordinates)
        if distance <= radius_m:
            matches.append((emergency, distance))
    matches.sort(key=lambda pair: pair[1])
    return matches


async def find_timed_out(db: AsyncSession, now: datetime | None = None) -> list[Emergency]:
    """Active emergencies older than their own ``settings.timeout_minutes``."""
    now = now or utcnow()
    result = await db.execute(select(Emergency).where(Emergency.status == EmergencyStatus.ACTIVE))

    timed_out = []
    for emergency in result.scalars().all():
        timeout = (emergency.settings or {}).get("timeout_minutes", DEFAULT_SETTINGS["timeout_minutes"])
        if has_timed_out(emergency.created_at or emergency.sos_triggered_at, timeout, now):
            timed_out.append(emergency)
    return timed_out


async def find_awaiting_acceptance(db: AsyncSession) -> list[Emergency]:
    """Active emergencies where no helper has accepted yet."""
    accepted = (
        select(EmergencyAssignment.emergency_id)
        .where(EmergencyAssignment.status != AssignmentStatus.REQUESTED)
    )
    query = (
        select(Emergency)
        .where(Emergency.status == EmergencyStatus.ACTIVE, Emergency.id.notin_(accepted))
        .order_by(Emergency.created_at)
    )
    result = await db.execute(query)
    return list(result.scalars().all())


async def purge_expired(db: AsyncSession, now: datetime | None = None) -> int:
    now = now or utcnow()
    expired = select(Emergency.id).where(Emergency.expires_at <= now)

    # Children first; bulk deletes skip ORM cascades
    for child in (EmergencyAssignment, EmergencyLogEntry):
        await db.execute(
            delete(child)
            .where(child.emergency_id.in_(expired))
            .execution_options(synchronize_session=False)
        )
    result = await db.execute(
        delete(Emergency).where(Emergency.expires_at <= now).execution_options(synchronize_session=False)
    )
    await db.flush()

    purged = result.rowcount or 0
    if purged:
        logger.info("Purged %d expired emergencies", purged)
    return purged


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

async def aggregate_statistics(
    db: AsyncSession,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict[str, Any]:
    filters = []
    if start is not None:
        filters.append(Emergency.created_at >= start)
    if end is not None:
        filters.append(Emergency.created_at <= end)

    total = await db.scalar(select(func.count(Emergency.id)).where(*filters)) or 0
    resolved = await db.scalar(
        select(func.count(Emergency.id)).where(Emergency.status == EmergencyStatus.RESOLVED, *filters)
    ) or 0
    active = await db.scalar(
        select(func.count(Emergency.id)).where(Emergency.status == EmergencyStatus.ACTIVE, *filters)
    ) or 0

    type_rows = await db.execute(
        select(Emergency.type, func.count(Emergency.id)).where(*filters).group_by(Emergency.type)
    )
    by_type = [{"type": t.value, "count": c} for t, c in type_rows.all()]

    priority_rows = await db.execute(
        select(Emergency.priority, func.count(Emergency.id)).where(*filters).group_by(Emergency.priority)
    )
    by_priority = [{"priority": p.value, "count": c} for p, c in priority_rows.all()]

    # Interval arithmetic differs per dialect; average in Python
    timing_rows = await db.execute(
        select(Emergency.sos_triggered_at, Emergency.resolved_at)
        .where(Emergency.resolved_at.isnot(None), Emergency.sos_triggered_at.isnot(None), *filters)
    )
    durations = [(resolved_at - triggered).total_seconds() * 1000 for triggered, resolved_at in timing_rows.all()]
    avg_response_time_ms = round(sum(durations) / len(durations)) if durations else 0

    return {
        "total": total,
        "resolved": resolved,
        "active": active,
        "avg_response_time_ms": avg_response_time_ms,
        "by_type": sorted(by_type, key=lambda r: r["type"]),
        "by_priority": sorted(by_priority, key=lambda r: r["priority"]),
    }
