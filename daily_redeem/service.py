"""Daily redeem: top-ranked students claim a once-per-cycle points bonus."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import cycle_keys
from daily_redeem.models import DailyRedeemRecord
from errors import NotFound, StoreFailure, ValidationFailed
from extensions import db
from ledger import record_points, trigger_ledger_refresh
from leaderboard.service import SnapshotBundle, configured_policy, load_bundle
from models import GroupMembership, Student

REDEEM_CATEGORY = "daily_redeem"
DEFAULT_RANK_THRESHOLD = 10
DEFAULT_POINTS_TOP1 = 30
DEFAULT_POINTS_TOP_N = 15
DEFAULT_GROUP_ROLE_POINTS = {"seller": 300, "cleaner": 500}


def compute_status(
    participant_id: str,
    bundle: SnapshotBundle,
    cycle_key: str,
    *,
    record: Optional[DailyRedeemRecord] = None,
    record_known: bool = False,
    role_bonus: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Eligibility for one participant against an already-built snapshot bundle.

    Batch callers pass ``record``/``record_known`` and ``role_bonus`` so no extra query is
    made per participant.
    """
    _check_bundle(bundle, cycle_key)
    participant_id = str(participant_id)
    if not record_known:
        record = _find_record(participant_id, cycle_key)
    if role_bonus is None:
        role_bonus = _group_role_bonuses([participant_id], cycle_key)[participant_id]

    qualifying = _qualifying_boards(bundle, participant_id)
    best_rank = min((entry["rank"] for entry in qualifying), default=bundle.best_rank(participant_id))
    leaderboard_points = sum(entry["points"] for entry in qualifying)

    status: Dict[str, Any] = {
        "participant_id": participant_id,
        "cycle_key": cycle_key,
        "rank": best_rank,
        "boards": qualifying,
        "leaderboard_points": leaderboard_points,
        "group_role_points": role_bonus["points"],
        "group_roles": list(role_bonus["roles"]),
        "available_points": leaderboard_points + role_bonus["points"],
        "already_redeemed": record is not None,
        "eligible": False,
        "reason": None,
    }
    if record is not None:
        status["reason"] = "already_redeemed"
        status["points_granted"] = record.points_granted
    elif status["available_points"] <= 0:
        status["reason"] = "not_ranked"
    else:
        status["eligible"] = True
    return status


def compute_statuses(
    participant_ids: Iterable[str],
    bundle: SnapshotBundle,
    cycle_key: str,
) -> Dict[str, Dict[str, Any]]:
    _check_bundle(bundle, cycle_key)
    ids = list(dict.fromkeys(str(pid) for pid in participant_ids if pid))
    if not ids:
        return {}

    records: List[DailyRedeemRecord] = DailyRedeemRecord.query.filter(
        DailyRedeemRecord.cycle_key == cycle_key,
        DailyRedeemRecord.participant_id.in_(ids),
    ).all()
    by_participant = {record.participant_id: record for record in records}
    bonuses = _group_role_bonuses(ids, cycle_key)
    return {
        pid: compute_status(
            pid,
            bundle,
            cycle_key,
            record=by_participant.get(pid),
            record_known=True,
            role_bonus=bonuses[pid],
        )
        for pid in ids
    }


def claim(
    participant_id: str,
    cycle_key: Optional[str] = None,
    *,
    bundle: Optional[SnapshotBundle] = None,
    claimed_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Grant the current cycle's redeem once; a second claim (or a lost race) reports ``already_redeemed``.

    The cycle is always resolved from ``now``. A caller-supplied ``cycle_key`` must name that
    same cycle.
    """
    participant_id = str(participant_id)
    current_key = cycle_keys.current_cycle_key(configured_policy(), now)
    if cycle_key is not None and cycle_key != current_key:
        raise ValidationFailed(f"Only the current cycle ({current_key}) can be claimed.")
    cycle_key = current_key

    if db.session.get(Student, participant_id) is None:
        raise NotFound(f"Student {participant_id} not found.")
    if bundle is None:
        bundle = load_bundle(cycle_key, now=now)

    status = compute_status(participant_id, bundle, cycle_key)
    if status["already_redeemed"]:
        return _already_redeemed(participant_id, cycle_key)
    if not status["eligible"]:
        raise ValidationFailed(
            f"Not ranked in the top {_config_int('DAILY_REDEEM_RANK_THRESHOLD', DEFAULT_RANK_THRESHOLD)} "
            "for this cycle."
        )

    points = int(status["available_points"])
    sources = [entry["board"] for entry in status["boards"]] + status["group_roles"]
    record = DailyRedeemRecord(
        participant_id=participant_id,
        cycle_key=cycle_key,
        redeemed_at=cycle_keys.ensure_utc(now) or cycle_keys.utc_now(),
        points_granted=points,
        claimed_by=claimed_by,
    )
    try:
        db.session.add(record)
        db.session.flush()
        entry = record_points(
            participant_id,
            points,
            category=REDEEM_CATEGORY,
            note=f"Daily redeem {cycle_key} ({', '.join(sources)})",
            source=f"daily_redeem:{cycle_key}",
            created_by=claimed_by,
        )
        record.ledger_entry_id = entry.id
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return _already_redeemed(participant_id, cycle_key)
    except SQLAlchemyError as exc:
        db.session.rollback()
        if has_app_context():
            current_app.logger.exception("Daily redeem store error for %s/%s: %s", participant_id, cycle_key, exc)
        raise StoreFailure("Failed to record daily redeem.") from exc

    trigger_ledger_refresh("daily_redeem")
    return {
        "ok": True,
        "participant_id": participant_id,
        "cycle_key": cycle_key,
        "already_redeemed": False,
        "points_granted": points,
        "boards": status["boards"],
        "group_role_points": status["group_role_points"],
    }


def _qualifying_boards(bundle: SnapshotBundle, participant_id: str) -> List[Dict[str, Any]]:
    threshold = _config_int("DAILY_REDEEM_RANK_THRESHOLD", DEFAULT_RANK_THRESHOLD)
    top1_points = _config_int("DAILY_REDEEM_POINTS_TOP1", DEFAULT_POINTS_TOP1)
    top_n_points = _config_int("DAILY_REDEEM_POINTS_TOP_N", DEFAULT_POINTS_TOP_N)

    qualifying: List[Dict[str, Any]] = []
    for board_key, placement in sorted(bundle.placements(participant_id).items()):
        rank = placement["rank"]
        # Standing boards list idle students with a zero score; they never earn a board award.
        if rank > threshold or placement["score"] <= 0:
            continue
        qualifying.append(
            {
                "board": board_key,
                "rank": rank,
                "score": placement["score"],
                "points": top1_points if rank == 1 else top_n_points,
            }
        )
    return qualifying


def _group_role_bonuses(participant_ids: List[str], cycle_key: str) -> Dict[str, Dict[str, Any]]:
    """Daily points for paid group roles (e.g. camp seller) held on the cycle's date."""
    bonuses: Dict[str, Dict[str, Any]] = {pid: {"points": 0, "roles": []} for pid in participant_ids}
    role_points = _role_points_config()
    if not role_points:
        return bonuses

    day = cycle_keys.parse_cycle_key(cycle_key)
    memberships: List[GroupMembership] = GroupMembership.query.filter(
        GroupMembership.student_id.in_(participant_ids),
        GroupMembership.enabled.is_(True),
        GroupMembership.role.isnot(None),
    ).all()

    seen = set()
    for membership in memberships:
        role = (membership.role or "").strip().lower()
        points = role_points.get(role, 0)
        if points <= 0:
            continue
        if membership.starts_on and day < membership.starts_on:
            continue
        if membership.ends_on and day > membership.ends_on:
            continue
        key = (membership.student_id, membership.group_key, role)
        if key in seen:
            continue
        seen.add(key)
        bonus = bonuses[membership.student_id]
        bonus["points"] += points
        if role not in bonus["roles"]:
            bonus["roles"].append(role)
    return bonuses


def _role_points_config() -> Dict[str, int]:
    raw = DEFAULT_GROUP_ROLE_POINTS
    if has_app_context():
        raw = current_app.config.get("DAILY_REDEEM_GROUP_ROLE_POINTS", DEFAULT_GROUP_ROLE_POINTS) or {}
    return {str(role).strip().lower(): int(points) for role, points in raw.items()}


def _find_record(participant_id: str, cycle_key: str) -> Optional[DailyRedeemRecord]:
    return DailyRedeemRecord.query.filter_by(participant_id=participant_id, cycle_key=cycle_key).first()


def _already_redeemed(participant_id: str, cycle_key: str) -> Dict[str, Any]:
    return {
        "ok": True,
        "participant_id": participant_id,
        "cycle_key": cycle_key,
        "already_redeemed": True,
        "points_granted": 0,
    }


def _check_bundle(bundle: SnapshotBundle, cycle_key: str) -> None:
    if not cycle_keys.is_cycle_key(cycle_key):
        raise ValidationFailed("Invalid cycle_key; expected YYYY-MM-DD.")
    if bundle.cycle_key != cycle_key:
        raise ValidationFailed("Snapshot bundle belongs to a different cycle.")


def _config_int(key: str, default: int) -> int:
    if not has_app_context():
        return default
    return int(current_app.config.get(key, default))
