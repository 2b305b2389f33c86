from lifeline.models.emergency import (
    Emergency,
    EmergencyAssignment,
    EmergencyLogEntry,
    EmergencyType,
    EmergencyStatus,
    EmergencyPriority,
    AssignmentStatus,
    LogEntryType,
    ActorKind,
    ResolutionType,
    LocationProvider,
)
from lifeline.models.helper_location import HelperLocation

__all__ = [
    "Emergency",
    "EmergencyAssignment",
    "EmergencyLogEntry",
    "EmergencyType",
    "EmergencyStatus",
    "EmergencyPriority",
    "AssignmentStatus",
    "LogEntryType",
    "ActorKind",
    "ResolutionType",
    "LocationProvider",
    "HelperLocation",
]
