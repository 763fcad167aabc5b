"""Database models shared by the progress features (roster, roles, ledger, gift inventory)."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func

from cycle_keys import ensure_utc, utc_now
from extensions import db


def new_id() -> str:
    return uuid.uuid4().hex


class Student(db.Model):
    """A participant whose points feed the leaderboards."""

    __tablename__ = "students"

    id = db.Column(db.String(64), primary_key=True, default=new_id)
    name = db.Column(db.String(120), nullable=False)
    active = db.Column(db.Boolean, default=True, nullable=False)

    # Cached totals, recomputed from the ledger whenever the ledger changes.
    points_total = db.Column(db.Integer, default=0, nullable=False)
    lifetime_points = db.Column(db.Integer, default=0, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), server_default=func.now(), nullable=False)

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "active": self.active,
            "points_total": self.points_total,
            "lifetime_points": self.lifetime_points,
        }

    def __repr__(self) -> str:  # pragma: no cover - helper for shell debugging
        return f"<Student id={self.id!r} name={self.name!r}>"


class UserRole(db.Model):
    """Role grants for an authenticated user; ``student_id`` links a student login to its roster row."""

    __tablename__ = "user_roles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), index=True, nullable=False)
    role = db.Column(db.String(20), nullable=False)
    student_id = db.Column(db.String(64), db.ForeignKey("students.id"), nullable=True)


class ParentStudentLink(db.Model):
    __tablename__ = "parent_students"

    id = db.Column(db.Integer, primary_key=True)
    parent_user_id = db.Column(db.String(64), index=True, nullable=False)
    student_id = db.Column(db.String(64), db.ForeignKey("students.id"), nullable=False)
    relationship_type = db.Column(db.String(30), default="parent", nullable=False)

    __table_args__ = (
        db.UniqueConstraint("parent_user_id", "student_id", name="uq_parent_student"),
    )


class GroupMembership(db.Model):
    """Membership of a student in a named group (camp roster, class), optionally per weekday."""

    __tablename__ = "group_memberships"

    id = db.Column(db.Integer, primary_key=True)
    group_key = db.Column(db.String(80), index=True, nullable=False)
    student_id = db.Column(db.String(64), db.ForeignKey("students.id"), nullable=False)
    role = db.Column(db.String(40), nullable=True)
    day_codes = db.Column(db.JSON, default=list, nullable=False)
    # Inclusive local-date window during which the membership counts; open-ended when unset.
    starts_on = db.Column(db.Date, nullable=True)
    ends_on = db.Column(db.Date, nullable=True)
    enabled = db.Column(db.Boolean, default=True, nullable=False)


class LedgerEntry(db.Model):
    """Durable point delta for a student; the source of every leaderboard score."""

    __tablename__ = "ledger"

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.String(64), db.ForeignKey("students.id"), index=True, nullable=False)
    points = db.Column(db.Integer, nullable=False)
    category = db.Column(db.String(50), nullable=False, default="general")
    note = db.Column(db.Text, nullable=True)
    source = db.Column(db.String(80), nullable=True)
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now, index=True, nullable=False)

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "points": self.points,
            "category": self.category,
            "note": self.note,
            "source": self.source,
            "created_by": self.created_by,
            "created_at": isoformat_or_none(self.created_at),
        }


class GiftItem(db.Model):
    __tablename__ = "gift_items"

    id = db.Column(db.String(64), primary_key=True, default=new_id)
    name = db.Column(db.String(120), nullable=False)
    enabled = db.Column(db.Boolean, default=True, nullable=False)


class StudentGift(db.Model):
    """A gift sitting in a student's inventory until opened or expired."""

    __tablename__ = "student_gifts"

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.String(64), db.ForeignKey("students.id"), index=True, nullable=False)
    gift_item_id = db.Column(db.String(64), db.ForeignKey("gift_items.id"), nullable=False)
    qty = db.Column(db.Integer, default=1, nullable=False)
    opened_qty = db.Column(db.Integer, default=0, nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    granted_by = db.Column(db.String(64), nullable=True)
    note = db.Column(db.Text, nullable=True)
    source_rule_id = db.Column(db.String(64), nullable=True)
    source_occurrence = db.Column(db.String(32), nullable=True)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now, nullable=False)

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "gift_item_id": self.gift_item_id,
            "qty": self.qty,
            "opened_qty": self.opened_qty,
            "expires_at": isoformat_or_none(self.expires_at),
            "granted_by": self.granted_by,
            "note": self.note,
        }


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat()
