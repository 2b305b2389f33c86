"""
Emergency dispatch policy — pure functions for priority, search radius,
severity, validation and display helpers.

Nothing here touches the database, so everything is testable in isolation.
Points are ``(longitude, latitude)`` tuples throughout.
"""

from __future__ import annotations

import math
import time
from datetime import datetime
from typing import Any, Mapping

from lifeline.models.emergency import (
    EmergencyType,
    EmergencyPriority,
    ResolutionType,
    LocationProvider,
    utcnow,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TITLE_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500

DEFAULT_SEARCH_RADIUS_M = 5_000
MAX_SEARCH_RADIUS_M = 50_000
MAX_RADIUS_TIME_MULTIPLIER = 3

# Location fixes worse than this are flagged as inaccurate
LOCATION_ACCURACY_M = 100

_OPTIONAL_LOCATION_TEXT = ("city", "state", "country", "zip_code")

_SETTING_TYPES = {
    "auto_assign_helpers": bool,
    "max_helpers": int,
    "search_radius": (int, float),
    "timeout_minutes": (int, float),
    "notify_guardians": bool,
}

EARTH_RADIUS_M = 6_371_000

DEFAULT_SETTINGS: dict[str, Any] = {
    "auto_assign_helpers": True,
    "max_helpers": 3,
    "search_radius": DEFAULT_SEARCH_RADIUS_M,
    "timeout_minutes": 30,
    "notify_guardians": True,
}

SOS_DEFAULT_TITLE = "SOS Emergency Alert"
SOS_DEFAULT_DESCRIPTION = "Emergency SOS triggered - immediate assistance required"

_TYPE_RADIUS_MULTIPLIERS = {
    EmergencyType.MEDICAL: 1.5,
    EmergencyType.ACCIDENT: 1.4,
    EmergencyType.FIRE: 1.5,
    EmergencyType.CRIME: 1.2,
    EmergencyType.NATURAL_DISASTER: 1.5,
    EmergencyType.OTHER: 1.0,
}

_TYPE_PRIORITIES = {
    EmergencyType.MEDICAL: EmergencyPriority.CRITICAL,
    EmergencyType.ACCIDENT: EmergencyPriority.CRITICAL,
    EmergencyType.FIRE: EmergencyPriority.CRITICAL,
    EmergencyType.CRIME: EmergencyPriority.HIGH,
    EmergencyType.NATURAL_DISASTER: EmergencyPriority.CRITICAL,
    EmergencyType.OTHER: EmergencyPriority.MEDIUM,
}

_ESCALATION = {
    EmergencyPriority.LOW: EmergencyPriority.MEDIUM,
    EmergencyPriority.MEDIUM: EmergencyPriority.HIGH,
    EmergencyPriority.HIGH: EmergencyPriority.CRITICAL,
    EmergencyPriority.CRITICAL: EmergencyPriority.CRITICAL,
}

_PRIORITY_SCORES = {
    EmergencyPriority.CRITICAL: 100,
    EmergencyPriority.HIGH: 75,
    EmergencyPriority.MEDIUM: 50,
    EmergencyPriority.LOW: 25,
}

_TYPE_SCORES = {
    EmergencyType.MEDICAL: 20,
    EmergencyType.ACCIDENT: 20,
    EmergencyType.FIRE: 20,
    EmergencyType.CRIME: 15,
    EmergencyType.NATURAL_DISASTER: 25,
}

_IMMEDIATE_ATTENTION_TYPES = {
    EmergencyType.MEDICAL,
    EmergencyType.ACCIDENT,
    EmergencyType.FIRE,
    EmergencyType.CRIME,
}

EMERGENCY_TEMPLATES = {
    EmergencyType.MEDICAL: {
        "title": "Medical Emergency",
        "description": "Medical emergency requiring immediate assistance",
        "priority": EmergencyPriority.CRITICAL,
    },
    EmergencyType.ACCIDENT: {
        "title": "Road Accident",
        "description": "Road accident requiring emergency response",
        "priority": EmergencyPriority.CRITICAL,
    },
    EmergencyType.FIRE: {
        "title": "Fire Emergency",
        "description": "Fire emergency requiring immediate response",
        "priority": EmergencyPriority.CRITICAL,
    },
    EmergencyType.CRIME: {
        "title": "Crime in Progress",
        "description": "Crime in progress requiring law enforcement",
        "priority": EmergencyPriority.HIGH,
    },
    EmergencyType.NATURAL_DISASTER: {
        "title": "Natural Disaster",
        "description": "Natural disaster requiring emergency response",
        "priority": EmergencyPriority.CRITICAL,
    },
}


def _coerce(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Priority
# ---------------------------------------------------------------------------

def escalate_priority(priority: EmergencyPriority | str) -> EmergencyPriority:
    current = _coerce(EmergencyPriority, priority)
    if current is None:
        raise ValueError(f"Unknown priority: {priority}")
    return _ESCALATION[current]


def determine_priority(
    emergency_type: EmergencyType | str,
    context: Mapping[str, Any] | None = None,
) -> EmergencyPriority:
    """Base priority for the type, escalated once per risk flag in *context*.

    Recognised flags: ``is_reoccurring``, ``time_sensitive``.
    """
    context = context or {}
    etype = _coerce(EmergencyType, emergency_type)
    priority = _TYPE_PRIORITIES.get(etype, EmergencyPriority.MEDIUM)

    if context.get("is_reoccurring"):
        priority = escalate_priority(priority)
    if context.get("time_sensitive"):
        priority = escalate_priority(priority)

    return priority


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

def calculate_search_radius(emergency_type: EmergencyType | str, minutes_elapsed: float = 0) -> float:
    """Dispatch radius in metres.

    Base radius scaled by the type factor, then widened by 10% per elapsed
    minute (at most 3x), never above ``MAX_SEARCH_RADIUS_M``.
    """
    etype = _coerce(EmergencyType, emergency_type)
    radius = DEFAULT_SEARCH_RADIUS_M * _TYPE_RADIUS_MULTIPLIERS.get(etype, 1.0)

    time_multiplier = 1 + max(minutes_elapsed, 0) / 10
    radius *= min(time_multiplier, MAX_RADIUS_TIME_MULTIPLIER)

    return min(radius, MAX_SEARCH_RADIUS_M)


def haversine_distance(p1: tuple[float, float], p2: tuple[float, float]) -> float:
    """Great-circle distance in metres between two (lon, lat) points."""
    lon1, lat1 = p1
    lon2, lat2 = p2
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bounding_boxes(point: tuple[float, float], radius_m: float) -> list[tuple[float, float, float, float]]:
    """(min_lon, min_lat, max_lon, max_lat) boxes enclosing a circle around *point*.

    One box normally; two when the circle crosses the antimeridian, and a
    full band of longitudes when it reaches a pole.
    """
    lon, lat = point
    dlat = math.degrees(radius_m / EARTH_RADIUS_M)
    min_lat = max(lat - dlat, -90.0)
    max_lat = min(lat + dlat, 90.0)
    # Longitude span is widest on the parallel nearest the pole
    cos_lat = math.cos(math.radians(max(abs(min_lat), abs(max_lat))))
    if cos_lat < 1e-9 or min_lat <= -90.0 or max_lat >= 90.0:
        return [(-180.0, min_lat, 180.0, max_lat)]

    dlon = math.degrees(radius_m / (EARTH_RADIUS_M * cos_lat))
    if dlon >= 180.0:
        return [(-180.0, min_lat, 180.0, max_lat)]

    min_lon, max_lon = lon - dlon, lon + dlon
    if min_lon < -180.0:
        return [(min_lon + 360.0, min_lat, 180.0, max_lat), (-180.0, min_lat, max_lon, max_lat)]
    if max_lon > 180.0:
        return [(min_lon, min_lat, 180.0, max_lat), (-180.0, min_lat, max_lon - 360.0, max_lat)]
    return [(min_lon, min_lat, max_lon, max_lat)]


def is_valid_point(longitude: Any, latitude: Any) -> bool:
    if isinstance(longitude, bool) or isinstance(latitude, bool):
        return False
    if not isinstance(longitude, (int, float)) or not isinstance(latitude, (int, float)):
        return False
    return -180 <= longitude <= 180 and -90 <= latitude <= 90


def is_location_accurate(accuracy: float | None) -> bool:
    return accuracy is not None and accuracy <= LOCATION_ACCURACY_M


# ---------------------------------------------------------------------------
# Scoring / timing
# ---------------------------------------------------------------------------

def severity_score(emergency, now: datetime | None = None) -> float:
    """0-100 score: priority + type + a recency bonus that decays over 10 hours."""
    now = now or utcnow()
    score = _PRIORITY_SCORES.get(_coerce(EmergencyPriority, emergency.priority), 0)
    score += _TYPE_SCORES.get(_coerce(EmergencyType, emergency.type), 0)

    created = emergency.created_at or emergency.sos_triggered_at or now
    hours_elapsed = (now - created).total_seconds() / 3600
    score += max(0.0, 10 - hours_elapsed)

    return min(score, 100)


def requires_immediate_attention(priority, emergency_type) -> bool:
    return (
        _coerce(EmergencyPriority, priority) == EmergencyPriority.CRITICAL
        or _coerce(EmergencyType, emergency_type) in _IMMEDIATE_ATTENTION_TYPES
    )


def minutes_since(start: datetime | None, now: datetime | None = None) -> float:
    if start is None:
        return 0.0
    now = now or utcnow()
    return max((now - start).total_seconds() / 60, 0.0)


def has_timed_out(created_at: datetime, timeout_minutes: int, now: datetime | None = None) -> bool:
    return minutes_since(created_at, now) > timeout_minutes


def calculate_response_times(emergency) -> dict[str, int | None]:
    """Milliseconds from SOS to each first milestone (None when not reached)."""
    times: dict[str, int | None] = {
        "time_to_first_assignment_ms": None,
        "time_to_first_acceptance_ms": None,
        "time_to_first_arrival_ms": None,
        "total_response_time_ms": None,
    }
    start = emergency.sos_triggered_at
    if start is None:
        return times

    milestones = {
        "time_to_first_assignment_ms": emergency.first_helper_assigned_at,
        "time_to_first_acceptance_ms": emergency.first_helper_accepted_at,
        "time_to_first_arrival_ms": emergency.first_helper_arrived_at,
        "total_response_time_ms": emergency.resolved_at,
    }
    for key, at in milestones.items():
        if at is not None:
            times[key] = int((at - start).total_seconds() * 1000)
    return times


def generate_emergency_code(emergency_id, now: float | None = None) -> str:
    millis = int((now if now is not None else time.time()) * 1000)
    return f"EM-{_base36(millis)}-{str(emergency_id).replace('-', '')[-4:]}".upper()


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


# ---------------------------------------------------------------------------
# Drafts / validation
# ---------------------------------------------------------------------------

def apply_default_settings(settings: Mapping[str, Any] | None) -> dict[str, Any]:
    merged = dict(DEFAULT_SETTINGS)
    if settings:
        merged.update({k: v for k, v in settings.items() if k in DEFAULT_SETTINGS and v is not None})
    return merged


def draft_from_template(emergency_type: EmergencyType | str, custom: Mapping[str, Any] | None = None) -> dict[str, Any]:
    etype = _coerce(EmergencyType, emergency_type)
    template = EMERGENCY_TEMPLATES.get(etype)
    if template is None:
        raise ValueError(f"Unsupported emergency type: {emergency_type}")

    custom = dict(custom or {})
    draft = {
        "type": etype.value,
        "title": custom.get("title") or template["title"],
        "description": custom.get("description") or template["description"],
        "priority": custom.get("priority") or template["priority"].value,
    }
    return {**custom, **draft}


def _check_text(errors, field: str, value, max_length: int) -> None:
    if value is not None and not isinstance(value, str):
        errors.append({"field": field, "message": f"Emergency {field} must be text"})
    elif not value or not value.strip():
        errors.append({"field": field, "message": f"Emergency {field} is required"})
    elif len(value) > max_length:
        errors.append({"field": field, "message": f"{field.capitalize()} must be less than {max_length} characters"})


def _check_settings(errors, settings: Mapping[str, Any]) -> None:
    for key, kind in _SETTING_TYPES.items():
        value = settings.get(key)
        if value is None:
            continue
        if kind is bool:
            ok = isinstance(value, bool)
        else:
            ok = isinstance(value, kind) and not isinstance(value, bool) and value >= 0
        if not ok:
            errors.append({"field": f"settings.{key}", "message": f"Invalid value for {key}"})


def _check_location(errors, location) -> None:
    if not isinstance(location, Mapping):
        errors.append({"field": "location", "message": "Location information is required"})
        return

    coordinates = location.get("coordinates")
    address = location.get("address")
    if not coordinates or address is None or (isinstance(address, str) and not address.strip()):
        errors.append({"field": "location", "message": "Location information is required"})
        return
    if not isinstance(address, str):
        errors.append({"field": "location.address", "message": "Address must be text"})
    if (
        not isinstance(coordinates, (list, tuple))
        or len(coordinates) != 2
        or not is_valid_point(coordinates[0], coordinates[1])
    ):
        errors.append({"field": "location", "message": "Invalid location coordinates"})

    for key in _OPTIONAL_LOCATION_TEXT:
        value = location.get(key)
        if value is not None and not isinstance(value, str):
            errors.append({"field": f"location.{key}", "message": f"{key.replace('_', ' ').capitalize()} must be text"})

    accuracy = location.get("accuracy")
    if accuracy is not None and (isinstance(accuracy, bool) or not isinstance(accuracy, (int, float))):
        errors.append({"field": "location.accuracy", "message": "Accuracy must be a number"})
    if location.get("provider") is not None and _coerce(LocationProvider, location["provider"]) is None:
        errors.append({"field": "location.provider", "message": "Invalid location provider"})


def validate_emergency_draft(draft: Mapping[str, Any]) -> list[dict[str, str]]:
    """Collect every problem with *draft*, not just the first one.

    Wrongly typed values are reported like any other violation, so a
    malformed draft never gets as far as the model.
    """
    errors: list[dict[str, str]] = []

    etype = draft.get("type")
    if not etype:
        errors.append({"field": "type", "message": "Emergency type is required"})
    elif not isinstance(etype, (str, EmergencyType)) or _coerce(EmergencyType, etype) is None:
        errors.append({"field": "type", "message": "Invalid emergency type"})

    _check_text(errors, "title", draft.get("title"), TITLE_MAX_LENGTH)
    _check_text(errors, "description", draft.get("description"), DESCRIPTION_MAX_LENGTH)

    priority = draft.get("priority")
    if priority is not None and (
        not isinstance(priority, (str, EmergencyPriority)) or _coerce(EmergencyPriority, priority) is None
    ):
        errors.append({"field": "priority", "message": "Invalid emergency priority"})

    _check_location(errors, draft.get("location"))

    for key in ("settings", "context", "medical_info"):
        value = draft.get(key)
        if value is not None and not isinstance(value, Mapping):
            errors.append({"field": key, "message": f"{key.replace('_', ' ').capitalize()} must be an object"})
    if isinstance(draft.get("settings"), Mapping):
        _check_settings(errors, draft["settings"])
    tags = draft.get("tags")
    if tags is not None and not isinstance(tags, (list, tuple)):
        errors.append({"field": "tags", "message": "Tags must be a list"})

    return errors


def validate_resolution(resolution: Mapping[str, Any]) -> list[dict[str, str]]:
    errors: list[dict[str, str]] = []
    rtype = resolution.get("resolution_type")
    if rtype is not None and _coerce(ResolutionType, rtype) is None:
        errors.append({"field": "resolution_type", "message": "Invalid resolution type"})

    rating = resolution.get("rating")
    if rating is not None:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            errors.append({"field": "rating", "message": "Rating must be an integer between 1 and 5"})
    return errors


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------

def format_location(emergency) -> str:
    parts = [emergency.address, emergency.city, emergency.state, emergency.country]
    return ", ".join(p for p in parts if p)


def emergency_summary(emergency) -> str:
    return f"{emergency.title}: {emergency.description} at {format_location(emergency)}"
