"""
Helper location routes.

Endpoints:
    PUT /locations/me              — Helper reports position and availability (helper)
    GET /locations/nearby-helpers  — Nearest available helpers around a point (authenticated)
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from lifeline.db.postgres import get_db
from lifeline.api.middleware.auth import get_current_actor, require_role
from lifeline.services import location_service
from lifeline.services.access_gate import Actor, Role
from lifeline.services.emergency_policy import DEFAULT_SEARCH_RADIUS_M, MAX_SEARCH_RADIUS_M
from lifeline.services.location_service import GeoIndex, get_geo_index

router = APIRouter()


class LocationUpdateRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)
    is_available: Optional[bool] = None


@router.put("/locations/me")
async def update_my_location(
    payload: LocationUpdateRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_role(Role.HELPER)),
):
    return await location_service.update_helper_location(
        db,
        actor.id,
        latitude=payload.latitude,
        longitude=payload.longitude,
        accuracy=payload.accuracy,
        is_available=payload.is_available,
    )


@router.get("/locations/nearby-helpers")
async def nearby_helpers(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius: float = Query(default=DEFAULT_SEARCH_RADIUS_M, gt=0, le=MAX_SEARCH_RADIUS_M),
    limit: int = Query(default=10, ge=1, le=50),
    actor: Actor = Depends(get_current_actor),
    geo_index: GeoIndex = Depends(get_geo_index),
):
    helpers = await geo_index.find_nearby_helpers((longitude, latitude), radius, [actor.id], limit)
    return {
        "helpers": [
            {
                "helper_id": h.helper_id,
                "latitude": h.latitude,
                "longitude": h.longitude,
                "distance_m": h.distance_m,
            }
            for h in helpers
        ],
        "count": len(helpers),
    }
