"""
Access gate — who may read or act on an emergency.

The authenticated caller is an ``Actor``: a role-tagged identity resolved
once from the bearer token, so services never re-derive the role.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from lifeline.models.emergency import ActorKind


class Role(str, enum.Enum):
    USER = "user"
    HELPER = "helper"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    kind: Role
    id: str

    @property
    def is_admin(self) -> bool:
        return self.kind == Role.ADMIN

    @property
    def log_kind(self) -> ActorKind:
        """Communication-log attribution: helpers as helper, everyone else as user."""
        return ActorKind.HELPER if self.kind == Role.HELPER else ActorKind.USER


def is_owner(emergency, requester_id: str) -> bool:
    return str(emergency.owner_id) == str(requester_id)


def is_assigned_helper(emergency, requester_id: str) -> bool:
    requester_id = str(requester_id)
    return any(a.helper_id == requester_id for a in emergency.assigned_helpers)


def can_access(emergency, requester_id: str, requester_role: Role | str | None) -> bool:
    """Admins, the owner, and any helper ever assigned (in any status)."""
    if requester_role == Role.ADMIN:
        return True
    if is_owner(emergency, requester_id):
        return True
    return is_assigned_helper(emergency, requester_id)


def can_manage(emergency, requester_id: str, requester_role: Role | str | None) -> bool:
    """Owner or admin — for actions that dispatch helpers on the owner's behalf."""
    if requester_role == Role.ADMIN:
        return True
    return is_owner(emergency, requester_id)
