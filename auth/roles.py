"""
auth/roles.py -- The closed set of roles and the super-admin predicate.

Roles are flat and unordered: no role implies another, with one exception --
the reserved super-admin role bypasses every role requirement. Historically
the super-admin role was stored under two spellings ("super_admin" and
"superadmin"); both normalise to Role.SUPER_ADMIN here, at the ingestion
boundary, so nothing downstream ever compares raw role strings.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    DOCTOR = "doctor"
    NURSE = "nurse"
    PHARMACIST = "pharmacist"
    PHYSIOTHERAPIST = "physiotherapist"
    ADMIN = "admin"
    RECEPTIONIST = "receptionist"
    LAB_TECHNICIAN = "lab_technician"
    READ_ONLY = "read_only"
    SUPER_ADMIN = "super_admin"

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        """Normalise a stored or submitted role string to its canonical member.

        Raises ValueError for anything outside the closed set.
        """
        if isinstance(value, Role):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        normalized = _ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown role: {value!r}") from None


_ALIASES = {
    "superadmin": "super_admin",
    "readonly": "read_only",
    "labtechnician": "lab_technician",
}


def is_super_admin(role: Role) -> bool:
    return role is Role.SUPER_ADMIN


ORG_ADMIN_ROLES = frozenset({Role.SUPER_ADMIN, Role.ADMIN})
