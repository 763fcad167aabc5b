"""Materialised per-cycle leaderboard rows."""

from extensions import db
from cycle_keys import utc_now


class LeaderboardSnapshotBoard(db.Model):
    """One row per (cycle, board) once that board has been materialised, even when empty."""

    __tablename__ = "leaderboard_snapshot_boards"

    id = db.Column(db.Integer, primary_key=True)
    cycle_key = db.Column(db.String(10), index=True, nullable=False)
    board_key = db.Column(db.String(50), nullable=False)
    participant_count = db.Column(db.Integer, default=0, nullable=False)
    built_at = db.Column(db.DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("cycle_key", "board_key", name="uq_snapshot_board_cycle"),
    )


class LeaderboardSnapshotRow(db.Model):
    __tablename__ = "leaderboard_snapshots"

    id = db.Column(db.Integer, primary_key=True)
    board_key = db.Column(db.String(50), nullable=False)
    cycle_key = db.Column(db.String(10), index=True, nullable=False)
    participant_id = db.Column(db.String(64), db.ForeignKey("students.id"), nullable=False)
    rank = db.Column(db.Integer, nullable=False)
    score = db.Column(db.Integer, nullable=False)

    __table_args__ = (
        db.UniqueConstraint(
            "cycle_key", "board_key", "participant_id", name="uq_snapshot_cycle_board_participant"
        ),
    )

    def to_public_dict(self) -> dict:
        return {
            "participant_id": self.participant_id,
            "rank": self.rank,
            "score": self.score,
        }
