"""Role-based decision of when a second factor is mandatory."""

from enum import Enum
from typing import Protocol


class Role(str, Enum):
    public_viewer = 'public_viewer'
    investigator = 'investigator'
    forensic_analyst = 'forensic_analyst'
    legal_professional = 'legal_professional'
    court_official = 'court_official'
    evidence_manager = 'evidence_manager'
    auditor = 'auditor'
    admin = 'admin'


# Numeric levels as assigned at registration.
ROLE_LEVELS: dict[int, Role] = {
    1: Role.public_viewer,
    2: Role.investigator,
    3: Role.forensic_analyst,
    4: Role.legal_professional,
    5: Role.court_official,
    6: Role.evidence_manager,
    7: Role.auditor,
    8: Role.admin,
}

MANDATORY_ROLES: frozenset[Role] = frozenset({Role.admin, Role.evidence_manager, Role.court_official})


class EnablementLookup(Protocol):
    def is_enabled(self, user_id: str) -> bool: ...


def resolve_role(role: Role | str | int | None) -> Role | None:
    if isinstance(role, Role):
        return role
    if isinstance(role, bool) or role is None:
        return None
    if isinstance(role, int):
        return ROLE_LEVELS.get(role)
    if role.isdigit():
        return ROLE_LEVELS.get(int(role))
    try:
        return Role(role)
    except ValueError:
        return None


def requires_two_factor(role: Role | str | int | None) -> bool:
    return resolve_role(role) in MANDATORY_ROLES


def requires_verification(store: EnablementLookup, user_id: str, role: Role | str | int | None) -> bool:
    """Login must pause for a code only when the role demands it and the user has enrolled."""
    return requires_two_factor(role) and store.is_enabled(user_id)


def needs_enrollment(store: EnablementLookup, user_id: str, role: Role | str | int | None) -> bool:
    # Advisory only: callers may prompt the user, nothing is blocked.
    return requires_two_factor(role) and not store.is_enabled(user_id)
