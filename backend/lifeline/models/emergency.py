"""
Emergency models — one incident, its helper assignments, and its
append-only communication log.

State-changing methods mirror the incident lifecycle; they only touch
in-memory state. Persisting (and recomputing the helper counters) is the
job of ``emergency_store.save_emergency``.
"""

import enum
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Column, String, Enum, DateTime, Float, Integer, Boolean, ForeignKey, Text,
    Uuid, JSON, Index, UniqueConstraint, DDL, event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from lifeline.db.postgres import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

EXPIRATION_HOURS = 24


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _values(enum_cls):
    return [member.value for member in enum_cls]


class EmergencyType(str, enum.Enum):
    MEDICAL = "medical"
    ACCIDENT = "accident"
    FIRE = "fire"
    CRIME = "crime"
    NATURAL_DISASTER = "natural_disaster"
    OTHER = "other"


class EmergencyStatus(str, enum.Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


TERMINAL_STATUSES = {EmergencyStatus.RESOLVED, EmergencyStatus.CANCELLED, EmergencyStatus.TIMEOUT}


class EmergencyPriority(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AssignmentStatus(str, enum.Enum):
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    ARRIVING = "arriving"
    ARRIVED = "arrived"
    COMPLETED = "completed"


ACTIVE_ASSIGNMENT_STATUSES = {AssignmentStatus.ACCEPTED, AssignmentStatus.ARRIVING, AssignmentStatus.ARRIVED}


class LogEntryType(str, enum.Enum):
    SOS_SENT = "sos_sent"
    HELPER_REQUESTED = "helper_requested"
    HELPER_ACCEPTED = "helper_accepted"
    HELPER_ARRIVED = "helper_arrived"
    STATUS_UPDATE = "status_update"
    MESSAGE = "message"


class ActorKind(str, enum.Enum):
    USER = "user"
    HELPER = "helper"
    SYSTEM = "system"


class ResolutionType(str, enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    NO_HELPERS = "no_helpers"


class LocationProvider(str, enum.Enum):
    GPS = "gps"
    NETWORK = "network"
    MANUAL = "manual"


ActorKindType = Enum(ActorKind, values_callable=_values, name="actorkind")


class Emergency(Base):
    __tablename__ = "emergencies"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(String(32), nullable=True, index=True)  # e.g. "EM-LX2F9K1A-3B7C"
    type = Column(Enum(EmergencyType, values_callable=_values, name="emergencytype"), nullable=False,
                  default=EmergencyType.MEDICAL)
    status = Column(Enum(EmergencyStatus, values_callable=_values, name="emergencystatus"), nullable=False,
                    default=EmergencyStatus.ACTIVE)
    priority = Column(Enum(EmergencyPriority, values_callable=_values, name="emergencypriority"), nullable=False,
                      default=EmergencyPriority.HIGH)
    owner_id = Column(String, nullable=False)

    title = Column(String(100), nullable=False)
    description = Column(String(500), nullable=False)

    # --- Location snapshot ([longitude, latitude] + address) ---
    longitude = Column(Float, nullable=False)
    latitude = Column(Float, nullable=False)
    address = Column(String, nullable=False)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    country = Column(String, nullable=True)
    zip_code = Column(String, nullable=True)
    location_accuracy = Column(Float, nullable=True)  # metres
    location_provider = Column(
        Enum(LocationProvider, values_callable=_values, name="locationprovider"),
        default=LocationProvider.GPS,
    )

    # Copy of the reporter's medical profile at trigger time
    medical_info = Column(JSONType, nullable=True)
    settings = Column(JSONType, nullable=False, default=dict)

    # --- Response metrics ---
    sos_triggered_at = Column(DateTime, nullable=False, default=utcnow)
    first_helper_assigned_at = Column(DateTime, nullable=True)
    first_helper_accepted_at = Column(DateTime, nullable=True)
    first_helper_arrived_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    total_helpers_requested = Column(Integer, nullable=False, default=0)
    total_helpers_accepted = Column(Integer, nullable=False, default=0)
    total_helpers_arrived = Column(Integer, nullable=False, default=0)

    # --- Resolution ---
    resolved_by_id = Column(String, nullable=True)
    resolved_by_kind = Column(ActorKindType, nullable=True)
    resolution_type = Column(Enum(ResolutionType, values_callable=_values, name="resolutiontype"), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    rating = Column(Integer, nullable=True)  # 1-5
    feedback = Column(Text, nullable=True)

    tags = Column(JSONType, nullable=False, default=list)
    is_test = Column(Boolean, default=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, default=lambda: utcnow() + timedelta(hours=EXPIRATION_HOURS), index=True)

    version = Column(Integer, nullable=False)

    assigned_helpers = relationship(
        "EmergencyAssignment",
        back_populates="emergency",
        order_by="EmergencyAssignment.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    communication_log = relationship(
        "EmergencyLogEntry",
        back_populates="emergency",
        order_by="EmergencyLogEntry.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_emergencies_owner_status_created", "owner_id", "status", "created_at"),
        Index("ix_emergencies_status_priority_created", "status", "priority", "created_at"),
    )

    # -- derived values ------------------------------------------------------

    @property
    def coordinates(self) -> tuple[float, float]:
        return (self.longitude, self.latitude)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def active_helpers_count(self) -> int:
        return sum(1 for a in self.assigned_helpers if a.status in ACTIVE_ASSIGNMENT_STATUSES)

    def duration_ms(self, now: datetime | None = None) -> int | None:
        if self.sos_triggered_at is None:
            return None
        end = self.resolved_at or now or utcnow()
        return int((end - self.sos_triggered_at).total_seconds() * 1000)

    # -- lifecycle -----------------------------------------------------------

    def find_assignment(self, helper_id: str) -> "EmergencyAssignment | None":
        helper_id = str(helper_id)
        for assignment in self.assigned_helpers:
            if assignment.helper_id == helper_id:
                return assignment
        return None

    def assign_helper(self, helper_id: str, now: datetime | None = None) -> "EmergencyAssignment":
        """Request *helper_id*; an existing assignment is returned unchanged."""
        existing = self.find_assignment(helper_id)
        if existing is not None:
            return existing

        now = now or utcnow()
        assignment = EmergencyAssignment(
            helper_id=str(helper_id),
            status=AssignmentStatus.REQUESTED,
            assigned_at=now,
        )
        self.assigned_helpers.append(assignment)
        if self.first_helper_assigned_at is None:
            self.first_helper_assigned_at = now
        return assignment

    def accept_helper(self, helper_id: str, now: datetime | None = None) -> "EmergencyAssignment | None":
        """Move a ``requested`` assignment to ``accepted``. Returns None otherwise."""
        assignment = self.find_assignment(helper_id)
        if assignment is None or assignment.status != AssignmentStatus.REQUESTED:
            return None

        now = now or utcnow()
        assignment.status = AssignmentStatus.ACCEPTED
        assignment.accepted_at = now
        if self.first_helper_accepted_at is None:
            self.first_helper_accepted_at = now
        self.add_to_communication_log(
            LogEntryType.HELPER_ACCEPTED,
            f"Helper {helper_id} accepted the request",
            actor_id=helper_id,
            actor_kind=ActorKind.HELPER,
            now=now,
        )
        return assignment

    def helper_arriving(self, helper_id: str, now: datetime | None = None) -> "EmergencyAssignment | None":
        assignment = self.find_assignment(helper_id)
        if assignment is None or assignment.status != AssignmentStatus.ACCEPTED:
            return None

        now = now or utcnow()
        assignment.status = AssignmentStatus.ARRIVING
        assignment.arriving_at = now
        self.add_to_communication_log(
            LogEntryType.STATUS_UPDATE,
            f"Helper {helper_id} is on the way",
            actor_id=helper_id,
            actor_kind=ActorKind.HELPER,
            now=now,
        )
        return assignment

    def helper_arrived(self, helper_id: str, now: datetime | None = None) -> "EmergencyAssignment | None":
        """Only ``accepted`` or ``arriving`` assignments can arrive."""
        assignment = self.find_assignment(helper_id)
        if assignment is None or assignment.status not in (AssignmentStatus.ACCEPTED, AssignmentStatus.ARRIVING):
            return None

        now = now or utcnow()
        assignment.status = AssignmentStatus.ARRIVED
        assignment.arrived_at = now
        if self.first_helper_arrived_at is None:
            self.first_helper_arrived_at = now
        self.add_to_communication_log(
            LogEntryType.HELPER_ARRIVED,
            f"Helper {helper_id} arrived at location",
            actor_id=helper_id,
            actor_kind=ActorKind.HELPER,
            now=now,
        )
        return assignment

    def resolve(
        self,
        resolved_by_id: str,
        resolved_by_kind: ActorKind,
        resolution_type: ResolutionType = ResolutionType.COMPLETED,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> None:
        # Status is always RESOLVED; the reason is kept in resolution_type.
        now = now or utcnow()
        self.status = EmergencyStatus.RESOLVED
        self.resolved_by_id = str(resolved_by_id) if resolved_by_id is not None else None
        self.resolved_by_kind = resolved_by_kind
        self.resolution_type = resolution_type
        self.resolution_notes = notes
        self.resolved_at = now
        self.add_to_communication_log(
            LogEntryType.STATUS_UPDATE,
            f"Emergency resolved: {resolution_type.value}",
            actor_id=resolved_by_id,
            actor_kind=resolved_by_kind,
            now=now,
        )

    def add_to_communication_log(
        self,
        entry_type: LogEntryType,
        message: str,
        *,
        actor_id: str | None,
        actor_kind: ActorKind,
        now: datetime | None = None,
    ) -> "EmergencyLogEntry":
        entry = EmergencyLogEntry(
            entry_type=entry_type,
            message=message,
            actor_id=str(actor_id) if actor_id is not None else None,
            actor_kind=actor_kind,
            timestamp=now or utcnow(),
        )
        self.communication_log.append(entry)
        return entry

    def recompute_counters(self) -> None:
        """Counters always follow the assignment list."""
        self.total_helpers_requested = len(self.assigned_helpers)
        self.total_helpers_accepted = sum(
            1 for a in self.assigned_helpers if a.status != AssignmentStatus.REQUESTED
        )
        self.total_helpers_arrived = sum(
            1 for a in self.assigned_helpers if a.status == AssignmentStatus.ARRIVED
        )


class EmergencyAssignment(Base):
    __tablename__ = "emergency_assignments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    emergency_id = Column(Uuid, ForeignKey("emergencies.id", ondelete="CASCADE"), nullable=False, index=True)
    helper_id = Column(String, nullable=False, index=True)
    status = Column(
        Enum(AssignmentStatus, values_callable=_values, name="assignmentstatus"),
        nullable=False,
        default=AssignmentStatus.REQUESTED,
    )
    assigned_at = Column(DateTime, nullable=False, default=utcnow)
    accepted_at = Column(DateTime, nullable=True)
    arriving_at = Column(DateTime, nullable=True)
    arrived_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    emergency = relationship("Emergency", back_populates="assigned_helpers")

    __table_args__ = (
        UniqueConstraint("emergency_id", "helper_id", name="uq_emergency_assignment_helper"),
    )


class EmergencyLogEntry(Base):
    __tablename__ = "emergency_log_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    emergency_id = Column(Uuid, ForeignKey("emergencies.id", ondelete="CASCADE"), nullable=False, index=True)
    entry_type = Column(Enum(LogEntryType, values_callable=_values, name="logentrytype"), nullable=False)
    message = Column(Text, nullable=True)
    actor_id = Column(String, nullable=True)
    actor_kind = Column(ActorKindType, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    emergency = relationship("Emergency", back_populates="communication_log")


# Spatial index for nearby-emergency queries (PostGIS only)
event.listen(
    Emergency.__table__,
    "after_create",
    DDL(
        "CREATE INDEX IF NOT EXISTS ix_emergencies_geog ON emergencies "
        "USING GIST ((ST_SetSRID(ST_MakePoint(longitude, latitude), 4326)::geography))"
    ).execute_if(dialect="postgresql"),
)
