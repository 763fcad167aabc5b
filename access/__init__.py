"""Role resolution for acting users against participants."""

from .identity import current_user_id, require_user_id
from .service import (
    ROLE_ADMIN,
    ROLE_CLASSROOM,
    ROLE_COACH,
    ROLE_PARENT,
    ROLE_SELF,
    STAFF_ROLES,
    require_batch_access,
    require_roles,
    resolve_access,
)

__all__ = [
    "ROLE_ADMIN",
    "ROLE_CLASSROOM",
    "ROLE_COACH",
    "ROLE_PARENT",
    "ROLE_SELF",
    "STAFF_ROLES",
    "current_user_id",
    "require_batch_access",
    "require_roles",
    "require_user_id",
    "resolve_access",
]
