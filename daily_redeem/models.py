"""Database models for the daily leaderboard redeem."""

from extensions import db
from cycle_keys import utc_now


class DailyRedeemRecord(db.Model):
    """One redeem per participant per cycle; the unique constraint is the claim arbiter."""

    __tablename__ = "daily_redeems"

    id = db.Column(db.Integer, primary_key=True)
    participant_id = db.Column(db.String(64), db.ForeignKey("students.id"), index=True, nullable=False)
    cycle_key = db.Column(db.String(10), nullable=False)
    redeemed_at = db.Column(db.DateTime(timezone=True), default=utc_now, nullable=False)
    points_granted = db.Column(db.Integer, default=0, nullable=False)
    ledger_entry_id = db.Column(db.Integer, db.ForeignKey("ledger.id"), nullable=True)
    claimed_by = db.Column(db.String(64), nullable=True)

    __table_args__ = (
        db.UniqueConstraint("participant_id", "cycle_key", name="uq_daily_redeem_participant_cycle"),
    )
