"""Resolve which roles an acting user holds over a participant."""

from __future__ import annotations

from typing import FrozenSet, Iterable, List, Optional

from flask import current_app, has_app_context

from errors import AuthenticationMissing, AuthorizationDenied, ValidationFailed
from extensions import db
from models import ParentStudentLink, UserRole

ROLE_SELF = "self"
ROLE_PARENT = "parent"
ROLE_COACH = "coach"
ROLE_CLASSROOM = "classroom"
ROLE_ADMIN = "admin"

# Stored UserRole.role values that apply to every participant.
GLOBAL_ROLES = frozenset({ROLE_ADMIN, ROLE_COACH, ROLE_CLASSROOM})
STAFF_ROLES = GLOBAL_ROLES

# Stored role name for a student login; it maps to "self" on its own student row.
STORED_STUDENT_ROLE = "student"


def resolve_access(
    acting_user_id: Optional[str],
    target_participant_id: Optional[str] = None,
) -> FrozenSet[str]:
    """Return the roles ``acting_user_id`` holds.

    Without a target only global roles (and nothing else) are returned and an empty set is
    allowed. With a target, an empty result raises ``AuthorizationDenied``.
    """
    if not acting_user_id:
        raise AuthenticationMissing("Not authenticated.")

    acting_user_id = str(acting_user_id)
    grants: List[UserRole] = UserRole.query.filter_by(user_id=acting_user_id).all()

    roles = {grant.role for grant in grants if grant.role in GLOBAL_ROLES}
    if target_participant_id is None:
        return frozenset(roles)

    target = str(target_participant_id)
    if acting_user_id == target or any(
        grant.role == STORED_STUDENT_ROLE and grant.student_id == target for grant in grants
    ):
        roles.add(ROLE_SELF)

    link = (
        db.session.query(ParentStudentLink.id)
        .filter_by(parent_user_id=acting_user_id, student_id=target)
        .first()
    )
    if link is not None:
        roles.add(ROLE_PARENT)

    if not roles:
        raise AuthorizationDenied("Not authorized for this student.")
    return frozenset(roles)


def require_roles(
    acting_user_id: Optional[str],
    target_participant_id: Optional[str],
    allowed: Iterable[str],
) -> FrozenSet[str]:
    roles = resolve_access(acting_user_id, target_participant_id)
    if not roles & frozenset(allowed):
        raise AuthorizationDenied("Not authorized for this action.")
    return roles


def require_batch_access(
    acting_user_id: Optional[str],
    participant_ids: Iterable[str],
    *,
    strict: Optional[bool] = None,
) -> FrozenSet[str]:
    """Batch endpoints need a staff role; strict mode checks every participant in the batch.

    Non-strict mode checks only the first participant, which is enough while staff roles
    are global but stops being so once roles become scoped to classes.
    """
    ids = [str(pid) for pid in participant_ids if pid]
    if not ids:
        raise ValidationFailed("Missing student_ids.")
    if strict is None:
        strict = _strict_batch_default()

    to_check = ids if strict else ids[:1]
    granted: FrozenSet[str] = frozenset()
    for pid in to_check:
        granted = require_roles(acting_user_id, pid, STAFF_ROLES)
    return granted


def _strict_batch_default() -> bool:
    if not has_app_context():
        return True
    return bool(current_app.config.get("STRICT_BATCH_ACCESS", True))
