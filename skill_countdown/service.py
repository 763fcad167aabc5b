"""Skill countdowns: assign deadlines, charge lapses once, pay decaying completion rewards."""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app, has_app_context
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

import cycle_keys
from errors import NotFound, StoreFailure, ValidationFailed
from extensions import db
from ledger import record_points, trigger_ledger_refresh
from models import Student
from skill_countdown.models import SOURCE_TYPES, SkillCountdownEntry

PENALTY_CATEGORY = "skill_sprint_penalty"
COMPLETE_CATEGORY = "skill_sprint_complete"
DEFAULT_PENALTY_POINTS = 5
DEFAULT_REWARD_POINTS = 10
DEFAULT_PENALTY_MAX_RATIO_PERCENT = 8
# Largest value a 32-bit signed Integer column holds.
MAX_STORED_INT = 2**31 - 1
MAX_PERIOD_DAYS = 3660

STATUS_ON_TRACK = "on_track"
STATUS_LAPSED = "lapsed"
STATUS_RESOLVED = "resolved"

_ONE_DAY = timedelta(days=1)


def lapsed_periods(deadline_at: datetime, period_days: Optional[int], now: datetime) -> int:
    deadline_at = cycle_keys.ensure_utc(deadline_at)
    now = cycle_keys.ensure_utc(now)
    if now <= deadline_at:
        return 0
    if not period_days:
        return 1
    return 1 + math.floor((now - deadline_at) / timedelta(days=int(period_days)))


def next_deadline(deadline_at: datetime, period_days: Optional[int], now: datetime) -> Optional[datetime]:
    deadline_at = cycle_keys.ensure_utc(deadline_at)
    if now < deadline_at:
        return deadline_at
    if not period_days:
        return None
    return deadline_at + timedelta(days=int(period_days)) * lapsed_periods(deadline_at, period_days, now)


def prize_now(
    initial_prize: int,
    assigned_at: Optional[datetime],
    due_at: Optional[datetime],
    now: datetime,
) -> int:
    """Reward left at ``now``: loses one equal share per elapsed day, nothing a day past due."""
    initial = max(0, int(initial_prize or 0))
    if initial <= 0:
        return 0
    assigned_at = cycle_keys.ensure_utc(assigned_at)
    due_at = cycle_keys.ensure_utc(due_at)
    if assigned_at is None or due_at is None or due_at <= assigned_at:
        return initial

    now = cycle_keys.ensure_utc(now)
    if now >= due_at + _ONE_DAY:
        return 0

    days = max(1, math.ceil((due_at - assigned_at) / _ONE_DAY))
    one_day_value = initial / days
    bounded_now = min(now, due_at)
    elapsed_days = max(0, math.floor((bounded_now - assigned_at) / _ONE_DAY))
    value = initial - min(days - 1, elapsed_days) * one_day_value
    return max(round(one_day_value), round(value))


def process_penalties(
    participant_id: str,
    acting_user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Charge every pending lapse of the student's open countdowns exactly once."""
    now = cycle_keys.ensure_utc(now) or cycle_keys.utc_now()
    participant_id = str(participant_id or "").strip()
    if not participant_id:
        raise ValidationFailed("Missing student_id.")

    applied: List[Dict[str, Any]] = []
    try:
        entries = _open_entries(participant_id)
        for entry in entries:
            lapses = lapsed_periods(entry.deadline_at, entry.period_days, now)
            already = int(entry.penalty_applied_count or 0)
            pending = lapses - already

            values: Dict[str, Any] = {"last_checked_at": now}
            if pending > 0:
                values.update(penalty_applied_count=lapses, last_penalty_at=now)
            result = db.session.execute(
                update(SkillCountdownEntry)
                .where(
                    SkillCountdownEntry.id == entry.id,
                    SkillCountdownEntry.penalty_applied_count == already,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if pending <= 0 or result.rowcount != 1:
                continue

            penalty = max(0, int(entry.penalty_points or 0))
            for lapse_number in range(already + 1, lapses + 1):
                if penalty > 0:
                    record_points(
                        participant_id,
                        -penalty,
                        category=PENALTY_CATEGORY,
                        note=_penalty_note(entry, lapse_number),
                        source=f"skill_countdown:{entry.id}:{lapse_number}",
                        created_by=acting_user_id,
                        created_at=now,
                    )
            applied.append(
                {
                    "entry_id": entry.id,
                    "label": entry.label,
                    "lapses_charged": pending,
                    "points": -penalty * pending,
                }
            )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        _log_exception("Skill countdown penalties failed for %s: %s", participant_id, exc)
        raise StoreFailure("Failed to apply skill countdown penalties.") from exc

    if any(item["points"] for item in applied):
        trigger_ledger_refresh("skill_countdown_penalty")
    return {"ok": True, "participant_id": participant_id, "penalties_applied": applied}


def process_all(acting_user_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = cycle_keys.ensure_utc(now) or cycle_keys.utc_now()
    rows = (
        db.session.query(SkillCountdownEntry.participant_id)
        .filter(SkillCountdownEntry.enabled.is_(True), SkillCountdownEntry.completed_at.is_(None))
        .distinct()
        .all()
    )
    results = [process_penalties(str(row[0]), acting_user_id, now) for row in rows]
    return {
        "ok": True,
        "students_checked": len(results),
        "penalties_applied": [item for result in results for item in result["penalties_applied"]],
    }


def fetch_snapshot(participant_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = cycle_keys.ensure_utc(now) or cycle_keys.utc_now()
    entries: List[SkillCountdownEntry] = (
        SkillCountdownEntry.query.filter_by(participant_id=str(participant_id), enabled=True)
        .order_by(SkillCountdownEntry.deadline_at.asc(), SkillCountdownEntry.id.asc())
        .all()
    )

    rows = [_view(entry, now) for entry in entries]
    open_rows = [row for row in rows if row["status"] != STATUS_RESOLVED]
    upcoming = sorted(row["next_deadline_at"] for row in open_rows if row["next_deadline_at"])
    summary = {
        "active_count": len(open_rows),
        "on_track_count": sum(1 for row in rows if row["status"] == STATUS_ON_TRACK),
        "lapsed_count": sum(1 for row in rows if row["status"] == STATUS_LAPSED),
        "resolved_count": sum(1 for row in rows if row["status"] == STATUS_RESOLVED),
        "next_deadline_at": upcoming[0] if upcoming else None,
        "points_lost": sum(row["points_lost"] for row in rows),
        "prize_available": sum(row["prize_now"] for row in open_rows),
    }
    return {"ok": True, "rows": rows, "summary": summary}


def assign(
    participant_id: str,
    *,
    label: str,
    deadline_at: Any,
    source_type: str = "manual",
    skill_id: Optional[str] = None,
    period_days: Optional[Any] = None,
    penalty_points: Any = DEFAULT_PENALTY_POINTS,
    reward_points: Any = DEFAULT_REWARD_POINTS,
    note: Optional[str] = None,
    assigned_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Create a countdown; the per-lapse penalty is capped at a share of the student's points."""
    label = (label or "").strip()
    if not label:
        raise ValidationFailed("Missing label.")
    source_type = (source_type or "manual").strip().lower()
    if source_type not in SOURCE_TYPES:
        raise ValidationFailed("Invalid source_type.")
    deadline = cycle_keys.parse_instant(deadline_at)
    if deadline is None:
        raise ValidationFailed("Invalid deadline_at.")
    penalty = _non_negative_int(penalty_points, "penalty_points")
    reward = _non_negative_int(reward_points, "reward_points")
    period = None
    if period_days not in (None, "", 0):
        period = _non_negative_int(period_days, "period_days")
        if not 1 <= period <= MAX_PERIOD_DAYS:
            raise ValidationFailed(f"period_days must be between 1 and {MAX_PERIOD_DAYS}.")

    student = db.session.get(Student, str(participant_id))
    if student is None:
        raise NotFound("Student not found.")

    ratio = _config_int("SKILL_PENALTY_MAX_RATIO_PERCENT", DEFAULT_PENALTY_MAX_RATIO_PERCENT)
    max_penalty = max(0, (max(0, student.points_total or 0) * ratio) // 100)

    entry = SkillCountdownEntry(
        participant_id=student.id,
        skill_id=skill_id or None,
        label=label,
        source_type=source_type,
        deadline_at=deadline,
        period_days=period,
        penalty_points=min(penalty, max_penalty),
        reward_points=reward,
        penalty_applied_count=0,
        enabled=True,
        assigned_by=assigned_by,
        assigned_at=cycle_keys.ensure_utc(now) or cycle_keys.utc_now(),
        note=(note or "").strip() or None,
    )
    db.session.add(entry)
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        _log_exception("Skill countdown assign failed for %s: %s", participant_id, exc)
        raise StoreFailure("Failed to assign skill countdown.") from exc
    return {"ok": True, "row": entry.to_public_dict()}


def get_entry(entry_id: str) -> SkillCountdownEntry:
    entry = db.session.get(SkillCountdownEntry, str(entry_id or ""))
    if entry is None:
        raise NotFound("Assignment not found.")
    return entry


def complete(
    entry_id: str,
    *,
    completed_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = cycle_keys.ensure_utc(now) or cycle_keys.utc_now()
    entry = get_entry(entry_id)
    if not entry.enabled:
        raise ValidationFailed("Assignment disabled.")
    if entry.completed_at is not None:
        return {"ok": True, "already_completed": True}

    reward = prize_now(entry.reward_points, entry.assigned_at, entry.deadline_at, now)
    participant_id = entry.participant_id
    label = entry.label
    try:
        result = db.session.execute(
            update(SkillCountdownEntry)
            .where(SkillCountdownEntry.id == entry.id, SkillCountdownEntry.completed_at.is_(None))
            .values(completed_at=now, completed_by=completed_by)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            return {"ok": True, "already_completed": True}
        if reward > 0:
            record_points(
                participant_id,
                reward,
                category=COMPLETE_CATEGORY,
                note=f"Skill Sprint complete: {label}",
                source=f"skill_countdown:{entry_id}:complete",
                created_by=completed_by,
                created_at=now,
            )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        _log_exception("Skill countdown complete failed for %s: %s", entry_id, exc)
        raise StoreFailure("Failed to complete skill countdown.") from exc

    if reward > 0:
        trigger_ledger_refresh("skill_countdown_complete")
    return {"ok": True, "already_completed": False, "reward_points": reward, "completed_at": now.isoformat()}


def _open_entries(participant_id: str) -> List[SkillCountdownEntry]:
    return (
        SkillCountdownEntry.query.filter(
            SkillCountdownEntry.participant_id == participant_id,
            SkillCountdownEntry.enabled.is_(True),
            SkillCountdownEntry.completed_at.is_(None),
        )
        .order_by(SkillCountdownEntry.deadline_at.asc(), SkillCountdownEntry.id.asc())
        .all()
    )


def _view(entry: SkillCountdownEntry, now: datetime) -> Dict[str, Any]:
    row = entry.to_public_dict()
    deadline = cycle_keys.ensure_utc(entry.deadline_at)
    lapses = lapsed_periods(deadline, entry.period_days, now)
    upcoming = next_deadline(deadline, entry.period_days, now)

    if entry.completed_at is not None:
        status = STATUS_RESOLVED
    elif lapses > 0:
        status = STATUS_LAPSED
    else:
        status = STATUS_ON_TRACK

    row.update(
        status=status,
        lapsed_periods=lapses,
        remaining_seconds=int((deadline - now).total_seconds()),
        next_deadline_at=upcoming.isoformat() if upcoming and status != STATUS_RESOLVED else None,
        points_lost=max(0, int(entry.penalty_applied_count or 0)) * max(0, int(entry.penalty_points or 0)),
        prize_now=0 if status == STATUS_RESOLVED else prize_now(entry.reward_points, entry.assigned_at, deadline, now),
    )
    return row


def _penalty_note(entry: SkillCountdownEntry, lapse_number: int) -> str:
    if entry.period_days:
        return f"Skill Sprint missed: {entry.label} (period {lapse_number}, every {entry.period_days} days)"
    return f"Skill Sprint missed: {entry.label}"


def _non_negative_int(value: Any, field_name: str) -> int:
    try:
        number = math.floor(float(value))
    except (TypeError, ValueError, OverflowError) as exc:
        raise ValidationFailed(f"{field_name} must be a number.") from exc
    if number > MAX_STORED_INT:
        raise ValidationFailed(f"{field_name} must be at most {MAX_STORED_INT}.")
    return max(0, int(number))


def _config_int(key: str, default: int) -> int:
    if not has_app_context():
        return default
    return int(current_app.config.get(key, default))


def _log_exception(message: str, *args) -> None:
    if has_app_context():
        current_app.logger.exception(message, *args)
