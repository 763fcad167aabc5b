"""Skill deadline countdowns with per-lapse penalties."""

from extensions import db
from cycle_keys import utc_now
from models import isoformat_or_none, new_id

SOURCE_TYPES = ("skill_tree", "skill_pulse", "manual")


class SkillCountdownEntry(db.Model):
    """A skill deadline for one student; ``period_days`` makes it recur after the first lapse."""

    __tablename__ = "skill_countdowns"

    id = db.Column(db.String(64), primary_key=True, default=new_id)
    participant_id = db.Column(db.String(64), db.ForeignKey("students.id"), index=True, nullable=False)
    skill_id = db.Column(db.String(64), nullable=True)
    label = db.Column(db.String(200), nullable=False)
    source_type = db.Column(db.String(20), default="manual", nullable=False)

    deadline_at = db.Column(db.DateTime(timezone=True), nullable=False)
    period_days = db.Column(db.Integer, nullable=True)
    penalty_points = db.Column(db.Integer, default=0, nullable=False)
    reward_points = db.Column(db.Integer, default=0, nullable=False)

    # Lapses already charged to the ledger; only advanced by compare-and-set.
    penalty_applied_count = db.Column(db.Integer, default=0, nullable=False)
    last_checked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_penalty_at = db.Column(db.DateTime(timezone=True), nullable=True)

    enabled = db.Column(db.Boolean, default=True, nullable=False)
    assigned_by = db.Column(db.String(64), nullable=True)
    assigned_at = db.Column(db.DateTime(timezone=True), default=utc_now, nullable=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.String(64), nullable=True)
    note = db.Column(db.Text, nullable=True)

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "participant_id": self.participant_id,
            "skill_id": self.skill_id,
            "label": self.label,
            "source_type": self.source_type,
            "deadline_at": isoformat_or_none(self.deadline_at),
            "period_days": self.period_days,
            "penalty_points": self.penalty_points,
            "reward_points": self.reward_points,
            "penalty_applied_count": self.penalty_applied_count,
            "last_checked_at": isoformat_or_none(self.last_checked_at),
            "last_penalty_at": isoformat_or_none(self.last_penalty_at),
            "enabled": self.enabled,
            "assigned_by": self.assigned_by,
            "assigned_at": isoformat_or_none(self.assigned_at),
            "completed_at": isoformat_or_none(self.completed_at),
            "completed_by": self.completed_by,
            "note": self.note,
        }
