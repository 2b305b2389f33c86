"""
Emergency API routes.

Endpoints:
    POST /emergency/sos                — One-tap SOS, dispatched immediately (authenticated)
    POST /emergency                    — Create an emergency without dispatch (authenticated)
    GET  /emergency/user/me            — Caller's own emergencies, newest first
    GET  /emergency/nearby/search      — Active emergencies a helper can join (helper)
    GET  /emergency/stats              — Aggregate statistics (admin)
    GET  /emergency/{id}               — Emergency detail (owner, assigned helper, admin)
    PUT  /emergency/{id}/accept        — Helper accepts a request (helper)
    PUT  /emergency/{id}/arriving      — Helper is on the way (helper)
    PUT  /emergency/{id}/arrived       — Helper arrived on scene (helper)
    PUT  /emergency/{id}/resolve       — Resolve (owner, assigned helper, admin)
    PUT  /emergency/{id}               — Cancel (owner, admin)
    POST /emergency/{id}/dispatch      — Re-run nearest-helper dispatch (owner, admin)
    POST /emergency/{id}/helpers       — Request specific helpers (owner, admin)
    POST /emergency/{id}/messages      — Post to the communication log (participants)
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from lifeline.db.postgres import get_db
from lifeline.api.middleware.auth import get_current_actor, require_role
from lifeline.api.middleware.rate_limit import rate_limit
from lifeline.services import emergency_service
from lifeline.services.access_gate import Actor, Role
from lifeline.services.emergency_policy import DEFAULT_SEARCH_RADIUS_M, draft_from_template
from lifeline.services.errors import ValidationError
from lifeline.services.location_service import GeoIndex, get_geo_index
from lifeline.services.notification_service import NotificationSink, get_notifier

router = APIRouter()

sos_limit = rate_limit(max_requests=3, window_seconds=60, key_prefix="sos")
update_limit = rate_limit(max_requests=10, window_seconds=60, key_prefix="emergency_update")
helper_limit = rate_limit(max_requests=5, window_seconds=60, key_prefix="helper_response")


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class LocationPayload(BaseModel):
    coordinates: list[float] = Field(..., description="[longitude, latitude]")
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    zip_code: Optional[str] = None
    accuracy: Optional[float] = Field(default=None, ge=0)
    provider: Optional[str] = Field(default=None, description="gps, network, manual")


class EmergencyContactPayload(BaseModel):
    name: str
    phone_number: str
    relationship: Optional[str] = None


class MedicalInfoPayload(BaseModel):
    blood_type: Optional[str] = None
    allergies: list[str] = []
    medical_conditions: list[str] = []
    medications: list[str] = []
    emergency_contacts: list[EmergencyContactPayload] = []


class EmergencySettingsPayload(BaseModel):
    auto_assign_helpers: Optional[bool] = None
    max_helpers: Optional[int] = Field(default=None, ge=1, le=20)
    search_radius: Optional[int] = Field(default=None, ge=100, le=50_000)
    timeout_minutes: Optional[int] = Field(default=None, ge=1)
    notify_guardians: Optional[bool] = None


class PriorityContext(BaseModel):
    is_reoccurring: bool = False
    time_sensitive: bool = False


class EmergencyCreateRequest(BaseModel):
    type: str = Field(..., description="medical, accident, fire, crime, natural_disaster, other")
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = Field(default=None, description="critical, high, medium, low")
    location: Optional[LocationPayload] = None
    medical_info: Optional[MedicalInfoPayload] = None
    settings: Optional[EmergencySettingsPayload] = None
    context: Optional[PriorityContext] = None
    tags: list[str] = []
    is_test: bool = False
    use_template: bool = Field(default=False, description="Fill missing title/description/priority for the type")


class SOSRequest(BaseModel):
    location: Optional[LocationPayload] = None
    title: Optional[str] = None
    message: Optional[str] = None
    medical_info: Optional[MedicalInfoPayload] = None
    settings: Optional[EmergencySettingsPayload] = None
    tags: list[str] = []
    is_test: bool = False


class ResolveRequest(BaseModel):
    resolution_type: Optional[str] = Field(default=None, description="completed, cancelled, timeout, no_helpers")
    notes: Optional[str] = None
    rating: Optional[int] = None
    feedback: Optional[str] = None


class EmergencyUpdateRequest(BaseModel):
    status: str = Field(default="cancelled", description="Only 'cancelled' is accepted")
    reason: Optional[str] = None


class HelperRequest(BaseModel):
    helper_ids: list[str] = Field(..., min_length=1)


class MessageRequest(BaseModel):
    message: str


def _draft(payload: BaseModel) -> dict:
    return payload.model_dump(exclude={"use_template"}, exclude_none=True)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

@router.post("/emergency/sos", status_code=status.HTTP_201_CREATED, dependencies=[sos_limit])
async def trigger_sos(
    payload: SOSRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    geo_index: GeoIndex = Depends(get_geo_index),
    notifier: NotificationSink = Depends(get_notifier),
):
    """Trigger an SOS. Nearby helpers are requested straight away."""
    return await emergency_service.trigger_sos(
        db, _draft(payload), actor.id, geo_index=geo_index, notifier=notifier,
    )


@router.post("/emergency", status_code=status.HTTP_201_CREATED, dependencies=[update_limit])
async def create_emergency(
    payload: EmergencyCreateRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    draft = _draft(payload)
    if payload.use_template:
        try:
            draft = draft_from_template(payload.type, draft)
        except ValueError as exc:
            raise ValidationError([{"field": "type", "message": str(exc)}])
    return await emergency_service.create_emergency(db, draft, actor.id)


# ---------------------------------------------------------------------------
# Reads (static paths before /emergency/{emergency_id})
# ---------------------------------------------------------------------------

@router.get("/emergency/user/me")
async def list_my_emergencies(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    type_filter: Optional[str] = Query(default=None, alias="type"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    emergencies = await emergency_service.list_user_emergencies(
        db, actor.id, status=status_filter, emergency_type=type_filter, limit=limit, offset=offset,
    )
    return {"emergencies": emergencies, "count": len(emergencies)}


@router.get("/emergency/nearby/search")
async def search_nearby_emergencies(
    latitude: float,
    longitude: float,
    radius: float = Query(default=DEFAULT_SEARCH_RADIUS_M, gt=0),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_role(Role.HELPER)),
):
    """Active emergencies near the helper that they do not own or already serve."""
    emergencies = await emergency_service.get_nearby_emergencies(db, longitude, latitude, radius, actor.id)
    return {"emergencies": emergencies, "count": len(emergencies)}


@router.get("/emergency/stats")
async def emergency_statistics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_role(Role.ADMIN)),
):
    return await emergency_service.get_statistics(db, _naive_utc(start_date), _naive_utc(end_date))


@router.get("/emergency/{emergency_id}")
async def get_emergency(
    emergency_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await emergency_service.get_emergency(db, emergency_id, actor)


# ---------------------------------------------------------------------------
# Helper progress
# ---------------------------------------------------------------------------

@router.put("/emergency/{emergency_id}/accept", dependencies=[helper_limit])
async def accept_helper_request(
    emergency_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_role(Role.HELPER)),
    notifier: NotificationSink = Depends(get_notifier),
):
    return await emergency_service.accept_helper_request(db, emergency_id, actor.id, notifier=notifier)


@router.put("/emergency/{emergency_id}/arriving", dependencies=[helper_limit])
async def mark_helper_arriving(
    emergency_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_role(Role.HELPER)),
    notifier: NotificationSink = Depends(get_notifier),
):
    return await emergency_service.mark_helper_arriving(db, emergency_id, actor.id, notifier=notifier)


@router.put("/emergency/{emergency_id}/arrived", dependencies=[helper_limit])
async def mark_helper_arrived(
    emergency_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_role(Role.HELPER)),
    notifier: NotificationSink = Depends(get_notifier),
):
    return await emergency_service.mark_helper_arrived(db, emergency_id, actor.id, notifier=notifier)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

@router.put("/emergency/{emergency_id}/resolve", dependencies=[update_limit])
async def resolve_emergency(
    emergency_id: UUID,
    payload: ResolveRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    notifier: NotificationSink = Depends(get_notifier),
):
    return await emergency_service.resolve_emergency(
        db, emergency_id, payload.model_dump(exclude_none=True), actor, notifier=notifier,
    )


@router.put("/emergency/{emergency_id}", dependencies=[update_limit])
async def update_emergency(
    emergency_id: UUID,
    payload: EmergencyUpdateRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    notifier: NotificationSink = Depends(get_notifier),
):
    """Limited update: the owner may only cancel."""
    if payload.status != "cancelled":
        raise ValidationError([{"field": "status", "message": "Only cancellation is supported"}])
    return await emergency_service.cancel_emergency(
        db, emergency_id, actor, payload.reason, notifier=notifier,
    )


# ---------------------------------------------------------------------------
# Dispatch / messages
# ---------------------------------------------------------------------------

@router.post("/emergency/{emergency_id}/dispatch", dependencies=[update_limit])
async def dispatch_nearby_helpers(
    emergency_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    geo_index: GeoIndex = Depends(get_geo_index),
    notifier: NotificationSink = Depends(get_notifier),
):
    assignments = await emergency_service.assign_nearby_helpers(
        db, emergency_id, geo_index=geo_index, notifier=notifier, requester=actor,
    )
    return {"assigned_helpers": assignments, "count": len(assignments)}


@router.post("/emergency/{emergency_id}/helpers", dependencies=[update_limit])
async def request_helpers(
    emergency_id: UUID,
    payload: HelperRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    notifier: NotificationSink = Depends(get_notifier),
):
    assignments = await emergency_service.request_helpers(
        db, emergency_id, payload.helper_ids, actor, notifier=notifier,
    )
    return {"assigned_helpers": assignments, "count": len(assignments)}


@router.post("/emergency/{emergency_id}/messages", status_code=status.HTTP_201_CREATED,
             dependencies=[update_limit])
async def post_message(
    emergency_id: UUID,
    payload: MessageRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    notifier: NotificationSink = Depends(get_notifier),
):
    return await emergency_service.add_message(db, emergency_id, actor, payload.message, notifier=notifier)
