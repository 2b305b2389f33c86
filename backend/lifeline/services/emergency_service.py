"""
Emergency lifecycle service — SOS intake, helper dispatch, helper progress,
resolution and the periodic sweeps.

Every mutation runs load -> mutate -> save inside ``_mutate``, which retries
on a lost optimistic-concurrency race and commits before any notification
goes out. GeoIndex and notification failures are logged and never undo a
committed state change.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from lifeline.config import get_settings
from lifeline.models.emergency import (
    Emergency, EmergencyAssignment, EmergencyLogEntry,
    EmergencyType, EmergencyStatus, EmergencyPriority,
    LogEntryType, ActorKind, ResolutionType, LocationProvider,
    EXPIRATION_HOURS, utcnow,
)
from lifeline.services import emergency_store as store
from lifeline.services.access_gate import Actor, can_access, can_manage
from lifeline.services.emergency_policy import (
    DEFAULT_SETTINGS,
    DESCRIPTION_MAX_LENGTH,
    MAX_SEARCH_RADIUS_M,
    SOS_DEFAULT_TITLE,
    SOS_DEFAULT_DESCRIPTION,
    apply_default_settings,
    calculate_response_times,
    calculate_search_radius,
    determine_priority,
    emergency_summary,
    format_location,
    generate_emergency_code,
    is_location_accurate,
    is_valid_point,
    minutes_since,
    requires_immediate_attention,
    severity_score,
    validate_emergency_draft,
    validate_resolution,
)
from lifeline.services.errors import (
    EmergencyError, ValidationError, NotFoundError, UnauthorizedError,
    InvalidStateError, ConflictError, CollaboratorError,
    EMERGENCY_ALREADY_RESOLVED, HELPER_ALREADY_ASSIGNED, HELPER_NOT_REQUESTED,
    HELPER_NOT_ASSIGNED, INVALID_LOCATION,
)
from lifeline.services.location_service import GeoIndex, NearbyHelper
from lifeline.services import notification_service as notifications
from lifeline.services.notification_service import NotificationSink

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _val(value) -> Any:
    return value.value if value is not None and hasattr(value, "value") else value


def _assignment_to_dict(a: EmergencyAssignment) -> dict[str, Any]:
    return {
        "helper_id": a.helper_id,
        "status": _val(a.status),
        "assigned_at": _iso(a.assigned_at),
        "accepted_at": _iso(a.accepted_at),
        "arriving_at": _iso(a.arriving_at),
        "arrived_at": _iso(a.arrived_at),
        "completed_at": _iso(a.completed_at),
        "notes": a.notes,
    }


def _log_entry_to_dict(entry: EmergencyLogEntry) -> dict[str, Any]:
    return {
        "type": _val(entry.entry_type),
        "message": entry.message,
        "timestamp": _iso(entry.timestamp),
        "actor": {"id": entry.actor_id, "kind": _val(entry.actor_kind)},
    }


def _emergency_to_dict(e: Emergency, now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    resolution = None
    if e.resolution_type is not None:
        resolution = {
            "resolved_by": {"id": e.resolved_by_id, "kind": _val(e.resolved_by_kind)},
            "resolution_type": _val(e.resolution_type),
            "notes": e.resolution_notes,
            "resolved_at": _iso(e.resolved_at),
            "rating": e.rating,
            "feedback": e.feedback,
        }

    return {
        "id": str(e.id),
        "code": e.code,
        "type": _val(e.type),
        "status": _val(e.status),
        "priority": _val(e.priority),
        "owner_id": e.owner_id,
        "title": e.title,
        "description": e.description,
        "location": {
            "type": "Point",
            "coordinates": [e.longitude, e.latitude],
            "address": e.address,
            "city": e.city,
            "state": e.state,
            "country": e.country,
            "zip_code": e.zip_code,
            "accuracy": e.location_accuracy,
            "provider": _val(e.location_provider),
            "is_accurate": is_location_accurate(e.location_accuracy),
            "formatted": format_location(e),
        },
        "medical_info": e.medical_info,
        "settings": e.settings,
        "assigned_helpers": [_assignment_to_dict(a) for a in e.assigned_helpers],
        "response_metrics": {
            "sos_triggered_at": _iso(e.sos_triggered_at),
            "first_helper_assigned_at": _iso(e.first_helper_assigned_at),
            "first_helper_accepted_at": _iso(e.first_helper_accepted_at),
            "first_helper_arrived_at": _iso(e.first_helper_arrived_at),
            "resolved_at": _iso(e.resolved_at),
            "total_helpers_requested": e.total_helpers_requested,
            "total_helpers_accepted": e.total_helpers_accepted,
            "total_helpers_arrived": e.total_helpers_arrived,
        },
        "communication_log": [_log_entry_to_dict(entry) for entry in e.communication_log],
        "resolution": resolution,
        "tags": e.tags or [],
        "is_test": bool(e.is_test),
        "created_at": _iso(e.created_at),
        "updated_at": _iso(e.updated_at),
        "expires_at": _iso(e.expires_at),
        "version": e.version,
        # derived
        "duration_ms": e.duration_ms(now),
        "active_helpers_count": e.active_helpers_count,
        "severity_score": round(severity_score(e, now), 2),
        "response_times": calculate_response_times(e),
        "requires_immediate_attention": requires_immediate_attention(e.priority, e.type),
        "summary": emergency_summary(e),
    }


def _event_payload(e: Emergency, **extra) -> dict[str, Any]:
    """Compact notification body; receivers fetch the full record if needed."""
    payload = {
        "emergency_id": str(e.id),
        "code": e.code,
        "type": _val(e.type),
        "priority": _val(e.priority),
        "status": _val(e.status),
        "title": e.title,
        "location": {"coordinates": [e.longitude, e.latitude], "address": e.address},
    }
    payload.update(extra)
    return payload


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------

async def _mutate(
    db: AsyncSession,
    emergency_id: Any,
    apply: Callable[[Emergency], Awaitable[Any]],
    *,
    now: datetime,
) -> tuple[Emergency, Any]:
    """Load, apply, save and commit; retried when another writer got there first.

    *apply* must raise before touching the emergency if the change is not
    allowed, so an error never leaves half-applied state behind.
    """
    max_attempts = get_settings().MAX_SAVE_RETRIES
    for attempt in range(1, max_attempts + 1):
        emergency = await store.get_emergency_by_id(db, emergency_id, refresh=attempt > 1)
        if emergency is None:
            raise NotFoundError()

        result = await apply(emergency)
        try:
            await store.save_emergency(db, emergency, now)
            await db.commit()
        except StaleDataError:
            await db.rollback()
            logger.warning(
                "Emergency %s changed concurrently (attempt %d/%d), reloading",
                emergency_id, attempt, max_attempts,
            )
            continue
        return emergency, result

    logger.error("Emergency %s: giving up after %d conflicting saves", emergency_id, max_attempts)
    raise ConflictError()


def _require_active(emergency: Emergency) -> None:
    if emergency.status != EmergencyStatus.ACTIVE:
        raise InvalidStateError(EMERGENCY_ALREADY_RESOLVED, code="EMERGENCY_NOT_ACTIVE")


def _coerce_enum(enum_cls, value, field: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError([{"field": field, "message": f"Invalid {field}"}])


async def _find_candidates(
    geo_index: GeoIndex,
    point: tuple[float, float],
    radius_m: float,
    exclude: list[str],
    limit: int,
) -> list[NearbyHelper]:
    """Nearby available helpers; an unreachable GeoIndex means no candidates."""
    timeout = get_settings().GEO_QUERY_TIMEOUT_SECONDS
    try:
        found = await asyncio.wait_for(
            geo_index.find_nearby_helpers(point, radius_m, exclude, limit), timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("Helper search timed out after %.1fs at %s (radius %.0fm)", timeout, point, radius_m)
        return []
    except CollaboratorError as exc:
        logger.warning("Helper search unavailable at %s: %s", point, exc.message)
        return []
    except Exception:
        logger.exception("Helper search failed at %s (radius %.0fm)", point, radius_m)
        return []

    excluded = set(exclude)
    return [h for h in found if str(h.helper_id) not in excluded][:limit]


def _request_helpers(
    emergency: Emergency,
    helper_ids: list[str],
    *,
    actor_id: str | None,
    actor_kind: ActorKind,
    now: datetime,
) -> list[EmergencyAssignment]:
    """Assign each helper once; returns only the newly created assignments."""
    created = []
    for helper_id in helper_ids:
        helper_id = str(helper_id)
        if helper_id == emergency.owner_id or emergency.find_assignment(helper_id) is not None:
            continue
        assignment = emergency.assign_helper(helper_id, now)
        emergency.add_to_communication_log(
            LogEntryType.HELPER_REQUESTED,
            f"Helper {helper_id} requested",
            actor_id=actor_id,
            actor_kind=actor_kind,
            now=now,
        )
        created.append(assignment)
    return created


async def _notify_helpers_requested(
    notifier: NotificationSink, emergency: Emergency, assignments: list[EmergencyAssignment],
) -> int:
    payload = _event_payload(emergency)
    return await notifications.fan_out(
        notifier, [a.helper_id for a in assignments], notifications.HELPER_REQUEST, payload,
    )


async def _dispatch(
    db: AsyncSession,
    emergency_id: Any,
    *,
    geo_index: GeoIndex,
    now: datetime,
    requester: Actor | None = None,
) -> tuple[Emergency, list[EmergencyAssignment]]:
    async def apply(emergency: Emergency):
        if requester is not None and not can_manage(emergency, requester.id, requester.kind):
            raise UnauthorizedError()
        _require_active(emergency)
        settings = emergency.settings or {}
        max_helpers = int(settings.get("max_helpers", DEFAULT_SETTINGS["max_helpers"]))
        radius = calculate_search_radius(emergency.type, minutes_since(emergency.sos_triggered_at, now))
        exclude = [emergency.owner_id] + [a.helper_id for a in emergency.assigned_helpers]

        candidates = await _find_candidates(geo_index, emergency.coordinates, radius, exclude, max_helpers)
        if not candidates:
            logger.info("No helpers available for emergency %s within %.0fm", emergency.id, radius)
            return []
        return _request_helpers(
            emergency,
            [c.helper_id for c in candidates],
            actor_id=None,
            actor_kind=ActorKind.SYSTEM,
            now=now,
        )

    emergency, created = await _mutate(db, emergency_id, apply, now=now)
    if created:
        logger.info("Emergency %s: requested %d helper(s)", emergency.id, len(created))
    return emergency, created


async def _create(db: AsyncSession, draft: Mapping[str, Any], owner_id: str, now: datetime) -> Emergency:
    errors = validate_emergency_draft(draft)
    if errors:
        raise ValidationError(errors)

    etype = EmergencyType(draft["type"])
    priority = draft.get("priority")
    priority = EmergencyPriority(priority) if priority else determine_priority(etype, draft.get("context"))

    location = draft["location"]
    longitude, latitude = location["coordinates"]
    provider = location.get("provider")

    emergency = Emergency(
        id=uuid.uuid4(),
        type=etype,
        status=EmergencyStatus.ACTIVE,
        priority=priority,
        owner_id=str(owner_id),
        title=draft["title"].strip(),
        description=draft["description"].strip(),
        longitude=float(longitude),
        latitude=float(latitude),
        address=location["address"].strip(),
        city=location.get("city"),
        state=location.get("state"),
        country=location.get("country"),
        zip_code=location.get("zip_code"),
        location_accuracy=location.get("accuracy"),
        location_provider=LocationProvider(provider) if provider else LocationProvider.GPS,
        medical_info=copy.deepcopy(draft.get("medical_info")) or None,
        settings=apply_default_settings(draft.get("settings")),
        tags=list(draft.get("tags") or []),
        is_test=bool(draft.get("is_test", False)),
        sos_triggered_at=now,
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(hours=EXPIRATION_HOURS),
        assigned_helpers=[],
        communication_log=[],
    )
    emergency.code = generate_emergency_code(emergency.id, now.timestamp())
    emergency.add_to_communication_log(
        LogEntryType.SOS_SENT,
        "Emergency SOS triggered",
        actor_id=owner_id,
        actor_kind=ActorKind.USER,
        now=now,
    )

    await store.create_emergency_record(db, emergency)
    await db.commit()
    logger.info(
        "Emergency %s (%s) created: type=%s priority=%s owner=%s",
        emergency.id, emergency.code, etype.value, priority.value, owner_id,
    )
    return emergency


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------

async def create_emergency(
    db: AsyncSession,
    draft: Mapping[str, Any],
    owner_id: str,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Validate and persist a new active emergency. Does not dispatch."""
    now = now or utcnow()
    emergency = await _create(db, draft, owner_id, now)
    return _emergency_to_dict(emergency, now)


async def trigger_sos(
    db: AsyncSession,
    sos_draft: Mapping[str, Any],
    owner_id: str,
    *,
    geo_index: GeoIndex,
    notifier: NotificationSink,
    now: datetime | None = None,
) -> dict[str, Any]:
    """One-tap SOS: a critical medical emergency, dispatched immediately.

    Returns ``{"emergency": ..., "notifications_sent": n}``.
    """
    now = now or utcnow()
    extra_settings = sos_draft.get("settings") or {}
    if not isinstance(extra_settings, Mapping):
        raise ValidationError([{"field": "settings", "message": "Settings must be an object"}])

    draft = {
        "type": EmergencyType.MEDICAL.value,
        "priority": EmergencyPriority.CRITICAL.value,
        "title": sos_draft.get("title") or SOS_DEFAULT_TITLE,
        "description": sos_draft.get("message") or sos_draft.get("description") or SOS_DEFAULT_DESCRIPTION,
        "location": sos_draft.get("location"),
        "medical_info": sos_draft.get("medical_info") or {},
        "settings": {
            "auto_assign_helpers": True,
            "notify_guardians": True,
            **extra_settings,
        },
        "tags": sos_draft.get("tags") or [],
        "is_test": sos_draft.get("is_test", False),
    }

    emergency = await _create(db, draft, owner_id, now)

    created: list[EmergencyAssignment] = []
    if emergency.settings.get("auto_assign_helpers"):
        emergency, created = await _dispatch(db, emergency.id, geo_index=geo_index, now=now)

    sent = 0
    if await notifications.send_best_effort(
        notifier, emergency.owner_id, notifications.SOS_ALERT, _event_payload(emergency),
    ):
        sent += 1
    sent += await _notify_helpers_requested(notifier, emergency, created)

    logger.info("SOS %s triggered by %s: %d helper(s) requested, %d notification(s) sent",
                emergency.id, owner_id, len(created), sent)
    return {"emergency": _emergency_to_dict(emergency, now), "notifications_sent": sent}


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

async def assign_nearby_helpers(
    db: AsyncSession,
    emergency_id: Any,
    *,
    geo_index: GeoIndex,
    notifier: NotificationSink,
    requester: Actor | None = None,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Request up to ``settings.max_helpers`` of the nearest available helpers.

    With a *requester*, only the owner or an admin may trigger dispatch.
    """
    now = now or utcnow()
    emergency, created = await _dispatch(db, emergency_id, geo_index=geo_index, now=now, requester=requester)
    await _notify_helpers_requested(notifier, emergency, created)
    return [_assignment_to_dict(a) for a in created]


async def request_helpers(
    db: AsyncSession,
    emergency_id: Any,
    helper_ids: list[str],
    requester: Actor,
    *,
    notifier: NotificationSink,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Manually request specific helpers (owner or admin only)."""
    now = now or utcnow()
    if not helper_ids:
        raise ValidationError([{"field": "helper_ids", "message": "At least one helper is required"}])

    async def apply(emergency: Emergency):
        if not can_manage(emergency, requester.id, requester.kind):
            raise UnauthorizedError()
        _require_active(emergency)
        return _request_helpers(
            emergency, helper_ids, actor_id=requester.id, actor_kind=requester.log_kind, now=now,
        )

    emergency, created = await _mutate(db, emergency_id, apply, now=now)
    logger.info("Emergency %s: %s manually requested %d helper(s)", emergency.id, requester.id, len(created))
    await _notify_helpers_requested(notifier, emergency, created)
    return [_assignment_to_dict(a) for a in created]


# ---------------------------------------------------------------------------
# Helper progress
# ---------------------------------------------------------------------------

async def accept_helper_request(
    db: AsyncSession,
    emergency_id: Any,
    helper_id: str,
    *,
    notifier: NotificationSink,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utcnow()
    helper_id = str(helper_id)

    async def apply(emergency: Emergency):
        _require_active(emergency)
        if emergency.find_assignment(helper_id) is None:
            raise InvalidStateError(HELPER_NOT_REQUESTED, code="HELPER_NOT_REQUESTED")
        assignment = emergency.accept_helper(helper_id, now)
        if assignment is None:
            raise InvalidStateError(HELPER_ALREADY_ASSIGNED, code="HELPER_ALREADY_ASSIGNED")
        return assignment

    emergency, assignment = await _mutate(db, emergency_id, apply, now=now)
    logger.info("Helper %s accepted emergency %s", helper_id, emergency.id)

    await notifications.send_best_effort(
        notifier, emergency.owner_id, notifications.HELPER_ACCEPTED,
        _event_payload(emergency, helper_id=helper_id),
    )
    return _assignment_to_dict(assignment)


async def mark_helper_arriving(
    db: AsyncSession,
    emergency_id: Any,
    helper_id: str,
    *,
    notifier: NotificationSink,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utcnow()
    helper_id = str(helper_id)

    async def apply(emergency: Emergency):
        _require_active(emergency)
        current = emergency.find_assignment(helper_id)
        if current is None:
            raise InvalidStateError(HELPER_NOT_ASSIGNED, code="HELPER_NOT_ASSIGNED")
        assignment = emergency.helper_arriving(helper_id, now)
        if assignment is None:
            raise InvalidStateError(
                f"Helper cannot head out from status '{_val(current.status)}'",
                code="INVALID_ASSIGNMENT_STATE",
            )
        return assignment

    emergency, assignment = await _mutate(db, emergency_id, apply, now=now)
    logger.info("Helper %s is on the way to emergency %s", helper_id, emergency.id)

    await notifications.send_best_effort(
        notifier, emergency.owner_id, notifications.HELPER_ARRIVING,
        _event_payload(emergency, helper_id=helper_id),
    )
    return _assignment_to_dict(assignment)


async def mark_helper_arrived(
    db: AsyncSession,
    emergency_id: Any,
    helper_id: str,
    *,
    notifier: NotificationSink,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utcnow()
    helper_id = str(helper_id)

    async def apply(emergency: Emergency):
        _require_active(emergency)
        current = emergency.find_assignment(helper_id)
        if current is None:
            raise InvalidStateError(HELPER_NOT_ASSIGNED, code="HELPER_NOT_ASSIGNED")
        assignment = emergency.helper_arrived(helper_id, now)
        if assignment is None:
            raise InvalidStateError(
                f"Helper cannot arrive from status '{_val(current.status)}'",
                code="INVALID_ASSIGNMENT_STATE",
            )
        return assignment

    emergency, assignment = await _mutate(db, emergency_id, apply, now=now)
    logger.info("Helper %s arrived at emergency %s", helper_id, emergency.id)

    await notifications.send_best_effort(
        notifier, emergency.owner_id, notifications.HELPER_ARRIVED,
        _event_payload(emergency, helper_id=helper_id),
    )
    return _assignment_to_dict(assignment)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

async def _notify_resolved(notifier: NotificationSink, emergency: Emergency) -> int:
    recipients = [emergency.owner_id] + [a.helper_id for a in emergency.assigned_helpers]
    payload = _event_payload(emergency, resolution_type=_val(emergency.resolution_type))
    return await notifications.fan_out(notifier, recipients, notifications.EMERGENCY_RESOLVED, payload)


async def resolve_emergency(
    db: AsyncSession,
    emergency_id: Any,
    resolution_data: Mapping[str, Any],
    resolved_by: Actor,
    *,
    notifier: NotificationSink,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Close an active emergency (owner, any assigned helper, or admin)."""
    now = now or utcnow()

    async def apply(emergency: Emergency):
        if not can_access(emergency, resolved_by.id, resolved_by.kind):
            raise UnauthorizedError()
        _require_active(emergency)
        errors = validate_resolution(resolution_data)
        if errors:
            raise ValidationError(errors)

        rtype = ResolutionType(resolution_data.get("resolution_type") or ResolutionType.COMPLETED)
        emergency.resolve(resolved_by.id, resolved_by.log_kind, rtype, resolution_data.get("notes"), now)
        if resolution_data.get("rating") is not None:
            emergency.rating = resolution_data["rating"]
            emergency.feedback = resolution_data.get("feedback")

    emergency, _ = await _mutate(db, emergency_id, apply, now=now)
    logger.info("Emergency %s resolved by %s (%s)", emergency.id, resolved_by.id, _val(emergency.resolution_type))

    await _notify_resolved(notifier, emergency)
    return _emergency_to_dict(emergency, now)


async def cancel_emergency(
    db: AsyncSession,
    emergency_id: Any,
    requester: Actor,
    reason: str | None = None,
    *,
    notifier: NotificationSink,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Owner (or admin) withdraws the emergency."""
    now = now or utcnow()

    async def apply(emergency: Emergency):
        if not can_manage(emergency, requester.id, requester.kind):
            raise UnauthorizedError()
        _require_active(emergency)
        emergency.resolve(
            requester.id,
            requester.log_kind,
            ResolutionType.CANCELLED,
            reason or "Emergency cancelled by user",
            now,
        )

    emergency, _ = await _mutate(db, emergency_id, apply, now=now)
    logger.info("Emergency %s cancelled by %s", emergency.id, requester.id)

    await _notify_resolved(notifier, emergency)
    return _emergency_to_dict(emergency, now)


# ---------------------------------------------------------------------------
# Communication log
# ---------------------------------------------------------------------------

async def add_message(
    db: AsyncSession,
    emergency_id: Any,
    requester: Actor,
    message: str,
    *,
    notifier: NotificationSink,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Append a chat message. Terminal emergencies still accept messages."""
    now = now or utcnow()
    text = (message or "").strip()
    if not text:
        raise ValidationError([{"field": "message", "message": "Message is required"}])
    if len(text) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError([{
            "field": "message",
            "message": f"Message must be less than {DESCRIPTION_MAX_LENGTH} characters",
        }])

    async def apply(emergency: Emergency):
        if not can_access(emergency, requester.id, requester.kind):
            raise UnauthorizedError()
        return emergency.add_to_communication_log(
            LogEntryType.MESSAGE, text, actor_id=requester.id, actor_kind=requester.log_kind, now=now,
        )

    emergency, entry = await _mutate(db, emergency_id, apply, now=now)

    recipients = [emergency.owner_id] + [a.helper_id for a in emergency.assigned_helpers]
    recipients = [r for r in recipients if r != str(requester.id)]
    await notifications.fan_out(
        notifier, recipients, notifications.EMERGENCY_MESSAGE,
        _event_payload(emergency, message=text, sender_id=str(requester.id)),
    )
    return _log_entry_to_dict(entry)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_emergency(db: AsyncSession, emergency_id: Any, requester: Actor) -> dict[str, Any]:
    emergency = await store.get_emergency_by_id(db, emergency_id)
    if emergency is None:
        raise NotFoundError()
    if not can_access(emergency, requester.id, requester.kind):
        raise UnauthorizedError()
    return _emergency_to_dict(emergency)


async def list_user_emergencies(
    db: AsyncSession,
    owner_id: str,
    *,
    status: str | None = None,
    emergency_type: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[dict[str, Any]]:
    emergencies = await store.find_by_owner(
        db,
        owner_id,
        status=_coerce_enum(EmergencyStatus, status, "status"),
        emergency_type=_coerce_enum(EmergencyType, emergency_type, "type"),
        limit=limit,
        offset=offset,
    )
    now = utcnow()
    return [_emergency_to_dict(e, now) for e in emergencies]


async def get_nearby_emergencies(
    db: AsyncSession,
    longitude: float,
    latitude: float,
    radius: float,
    helper_id: str,
    *,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Active emergencies a helper could still join, most severe first."""
    if not is_valid_point(longitude, latitude):
        raise ValidationError([{"field": "location", "message": INVALID_LOCATION}])
    now = now or utcnow()
    helper_id = str(helper_id)
    radius = min(max(float(radius), 0.0), MAX_SEARCH_RADIUS_M)

    matches = await store.find_near(db, (longitude, latitude), radius)

    results = []
    for emergency, distance in matches:
        if emergency.owner_id == helper_id or emergency.find_assignment(helper_id) is not None:
            continue
        data = _emergency_to_dict(emergency, now)
        data["distance_m"] = round(distance, 1)
        results.append(data)

    results.sort(key=lambda d: (-d["severity_score"], d["distance_m"]))
    return results


async def get_statistics(
    db: AsyncSession,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict[str, Any]:
    return await store.aggregate_statistics(db, start, end)


# ---------------------------------------------------------------------------
# Periodic sweeps
# ---------------------------------------------------------------------------

async def expire_timed_out_emergencies(
    db: AsyncSession,
    *,
    notifier: NotificationSink,
    now: datetime | None = None,
) -> int:
    """System-resolve active emergencies past their ``timeout_minutes``.

    Resolution type is ``timeout`` when helpers were requested and
    ``no_helpers`` when nobody was ever assigned.
    """
    now = now or utcnow()
    candidates = [e.id for e in await store.find_timed_out(db, now)]

    async def apply(emergency: Emergency):
        _require_active(emergency)
        rtype = ResolutionType.TIMEOUT if emergency.assigned_helpers else ResolutionType.NO_HELPERS
        emergency.resolve(None, ActorKind.SYSTEM, rtype, "Emergency timed out without resolution", now)

    expired = 0
    for emergency_id in candidates:
        try:
            emergency, _ = await _mutate(db, emergency_id, apply, now=now)
        except EmergencyError as exc:
            # Resolved or removed since the sweep query ran
            logger.info("Skipping timeout for emergency %s: %s", emergency_id, exc.message)
            continue
        expired += 1
        logger.info("Emergency %s timed out (%s)", emergency.id, _val(emergency.resolution_type))
        await _notify_resolved(notifier, emergency)

    return expired


async def redispatch_pending(
    db: AsyncSession,
    *,
    geo_index: GeoIndex,
    notifier: NotificationSink,
    now: datetime | None = None,
) -> int:
    """Widen the search for active emergencies nobody has accepted yet."""
    now = now or utcnow()
    pending = [
        e.id for e in await store.find_awaiting_acceptance(db)
        if (e.settings or {}).get("auto_assign_helpers", DEFAULT_SETTINGS["auto_assign_helpers"])
    ]

    requested = 0
    for emergency_id in pending:
        try:
            emergency, created = await _dispatch(db, emergency_id, geo_index=geo_index, now=now)
        except EmergencyError as exc:
            logger.info("Skipping redispatch for emergency %s: %s", emergency_id, exc.message)
            continue
        requested += len(created)
        await _notify_helpers_requested(notifier, emergency, created)

    return requested


async def purge_expired_emergencies(db: AsyncSession, now: datetime | None = None) -> int:
    purged = await store.purge_expired(db, now or utcnow())
    await db.commit()
    return purged
