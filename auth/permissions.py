"""
Role capabilities.

Authorization is a capability lookup against the caller's role rather than a
comparison of role strings at each endpoint.
"""
import enum
from typing import Dict, FrozenSet, Union

from database.models import UserRole


class Capability(str, enum.Enum):
    VIEW_COURSES = "view_courses"
    VIEW_AVAILABLE_COURSES = "view_available_courses"
    REGISTER_COURSE = "register_course"
    DROP_COURSE = "drop_course"
    VIEW_OWN_REGISTRATIONS = "view_own_registrations"
    VIEW_OWN_COURSES = "view_own_courses"
    VIEW_ROSTER = "view_roster"
    MANAGE_COURSES = "manage_courses"
    MANAGE_USERS = "manage_users"
    MANAGE_POLICIES = "manage_policies"
    VIEW_AUDIT_LOGS = "view_audit_logs"
    VERIFY_INTEGRITY = "verify_integrity"
    VIEW_STATS = "view_stats"


ROLE_CAPABILITIES: Dict[UserRole, FrozenSet[Capability]] = {
    UserRole.STUDENT: frozenset({
        Capability.VIEW_COURSES,
        Capability.VIEW_AVAILABLE_COURSES,
        Capability.REGISTER_COURSE,
        Capability.DROP_COURSE,
        Capability.VIEW_OWN_REGISTRATIONS,
    }),
    UserRole.FACULTY: frozenset({
        Capability.VIEW_COURSES,
        Capability.VIEW_OWN_COURSES,
        Capability.VIEW_ROSTER,
    }),
    UserRole.ADMIN: frozenset({
        Capability.VIEW_COURSES,
        Capability.VIEW_ROSTER,
        Capability.MANAGE_COURSES,
        Capability.MANAGE_USERS,
        Capability.MANAGE_POLICIES,
        Capability.VIEW_AUDIT_LOGS,
        Capability.VERIFY_INTEGRITY,
        Capability.VIEW_STATS,
    }),
}


def has_capability(role: Union[UserRole, str], capability: Capability) -> bool:
    """Check whether a role grants a capability. Unknown roles grant nothing."""
    try:
        role = UserRole(role)
    except ValueError:
        return False
    return capability in ROLE_CAPABILITIES.get(role, frozenset())
