"""Auto-gift rules and their per-student run ledger."""

from extensions import db
from cycle_keys import utc_now
from models import isoformat_or_none, new_id

RUN_GRANTED = "granted"
RUN_SKIPPED = "skipped"


class GiftAutoAssignmentRule(db.Model):
    """A recurring (or one-shot) gift grant to a selected set of students."""

    __tablename__ = "gift_auto_rules"

    id = db.Column(db.String(64), primary_key=True, default=new_id)
    name = db.Column(db.String(120), nullable=False)
    gift_item_id = db.Column(db.String(64), db.ForeignKey("gift_items.id"), nullable=False)
    quantity = db.Column(db.Integer, default=1, nullable=False)

    schedule_kind = db.Column(db.String(20), nullable=False)
    anchor_at = db.Column(db.DateTime(timezone=True), nullable=False)
    interval_days = db.Column(db.Integer, nullable=True)
    day_codes = db.Column(db.JSON, default=list, nullable=False)
    time_local = db.Column(db.String(5), nullable=True)
    active_from = db.Column(db.Date, nullable=True)
    active_until = db.Column(db.Date, nullable=True)
    catch_up = db.Column(db.Boolean, default=False, nullable=False)

    # {"kind": "explicit"|"all_active"|"group", "student_ids": [...], "group": key, "role": ...}
    target_selector = db.Column(db.JSON, default=dict, nullable=False)
    enabled = db.Column(db.Boolean, default=True, nullable=False)

    # Watermark: newest occurrence id already handled; only advanced by compare-and-set.
    last_fired_occurrence = db.Column(db.String(20), nullable=True)
    last_fired_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now, nullable=False)

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "gift_item_id": self.gift_item_id,
            "quantity": self.quantity,
            "schedule_kind": self.schedule_kind,
            "anchor_at": isoformat_or_none(self.anchor_at),
            "interval_days": self.interval_days,
            "day_codes": list(self.day_codes or []),
            "time_local": self.time_local,
            "active_from": self.active_from.isoformat() if self.active_from else None,
            "active_until": self.active_until.isoformat() if self.active_until else None,
            "catch_up": self.catch_up,
            "target_selector": dict(self.target_selector or {}),
            "enabled": self.enabled,
            "last_fired_occurrence": self.last_fired_occurrence,
            "last_fired_at": isoformat_or_none(self.last_fired_at),
        }


class GiftAutoAssignmentRun(db.Model):
    """Idempotency key per (rule, occurrence, student); ``skipped`` rows block a future grant."""

    __tablename__ = "gift_auto_runs"

    id = db.Column(db.Integer, primary_key=True)
    rule_id = db.Column(db.String(64), db.ForeignKey("gift_auto_rules.id"), index=True, nullable=False)
    occurrence_id = db.Column(db.String(20), nullable=False)
    student_id = db.Column(db.String(64), db.ForeignKey("students.id"), nullable=False)
    status = db.Column(db.String(10), default=RUN_GRANTED, nullable=False)
    student_gift_id = db.Column(db.Integer, db.ForeignKey("student_gifts.id"), nullable=True)
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("rule_id", "occurrence_id", "student_id", name="uq_gift_run_rule_occ_student"),
    )
