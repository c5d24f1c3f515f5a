# backend/mathbridge/core/enums.py
"""
Core enums for the MathBridge scheduling core.

Role and account-status values are owned by the identity subsystem; the
scheduling core only reads them to decide who may be matched or act.
"""

from enum import Enum


class RoleName(str, Enum):
    """Standard role names resolved by the identity collaborator."""

    ADMIN = "admin"
    STAFF = "staff"
    TUTOR = "tutor"
    PARENT = "parent"


class AccountStatus(str, Enum):
    """Account lifecycle statuses."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    BANNED = "banned"


class TeachingMode(str, Enum):
    """How a session is delivered."""

    ONLINE = "online"
    OFFLINE = "offline"
