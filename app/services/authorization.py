"""
Authorization gate: role resolution and capability predicates.

Client-side gating is UX only; every billing entry point calls
``require_billing_manager`` / ``require_billing_viewer`` server-side.
"""
import logging
from enum import Enum
from typing import Dict, FrozenSet, Optional

from sqlalchemy.orm import Session

from app.core.errors import PermissionDenied
from app.models import Membership

logger = logging.getLogger(__name__)


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


class MembershipStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    DEACTIVATED = "deactivated"


class Capability(str, Enum):
    MANAGE_MEMBERS = "manage_members"
    EDIT_DATA = "edit_data"
    DELETE_DATA = "delete_data"
    MANAGE_BILLING = "manage_billing"


ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.OWNER: frozenset(Capability),
    Role.ADMIN: frozenset(Capability),
    Role.MEMBER: frozenset({Capability.EDIT_DATA}),
    Role.VIEWER: frozenset(),
}

_missing = set(Role) - set(ROLE_CAPABILITIES)
if _missing:
    raise RuntimeError(f"Roles without a capability entry: {sorted(r.value for r in _missing)}")


def parse_role(value: Optional[str]) -> Optional[Role]:
    try:
        return Role(value)
    except ValueError:
        logger.warning("Unknown membership role %r", value)
        return None


def has_capability(role: Optional[Role], capability: Capability) -> bool:
    if role is None:
        return False
    return capability in ROLE_CAPABILITIES[role]


def can_manage_members(role: Optional[Role]) -> bool:
    return has_capability(role, Capability.MANAGE_MEMBERS)


def can_edit_data(role: Optional[Role]) -> bool:
    return has_capability(role, Capability.EDIT_DATA)


def can_delete_data(role: Optional[Role]) -> bool:
    return has_capability(role, Capability.DELETE_DATA)


def is_active(membership: Optional[Membership]) -> bool:
    return membership is not None and membership.status == MembershipStatus.ACTIVE.value


def can_manage_billing(membership: Optional[Membership]) -> bool:
    """Billing mutations need owner/admin AND an active membership."""
    if not is_active(membership):
        return False
    return has_capability(parse_role(membership.role), Capability.MANAGE_BILLING)


def can_view_billing(membership: Optional[Membership]) -> bool:
    return is_active(membership) and parse_role(membership.role) is not None


def get_membership(db: Session, organization_id: str, user_id: str) -> Optional[Membership]:
    return db.query(Membership).filter(
        Membership.organization_id == organization_id,
        Membership.user_id == user_id,
    ).first()


def require_billing_manager(db: Session, organization_id: str, user_id: str) -> Membership:
    membership = get_membership(db, organization_id, user_id)
    if not can_manage_billing(membership):
        logger.info("Billing change denied for user %s on organization %s", user_id, organization_id)
        raise PermissionDenied()
    return membership


def require_billing_viewer(db: Session, organization_id: str, user_id: str) -> Membership:
    membership = get_membership(db, organization_id, user_id)
    if not can_view_billing(membership):
        raise PermissionDenied("You are not a member of this organization")
    return membership
