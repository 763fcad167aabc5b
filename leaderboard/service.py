"""Build and cache per-cycle leaderboard snapshots from the points ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from flask import current_app, has_app_context
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import cycle_keys
from cycle_keys import CyclePolicy
from errors import StoreFailure, ValidationFailed
from extensions import db
from leaderboard.models import LeaderboardSnapshotBoard, LeaderboardSnapshotRow
from models import LedgerEntry, Student

SOURCE_TOTAL = "total"
SOURCE_LIFETIME = "lifetime"
SOURCE_WEEKLY = "weekly"
SOURCE_CYCLE = "cycle"
SOURCES = (SOURCE_TOTAL, SOURCE_LIFETIME, SOURCE_WEEKLY, SOURCE_CYCLE)


@dataclass(frozen=True)
class BoardSpec:
    key: str
    source: str = SOURCE_TOTAL
    higher_is_better: bool = True
    exclude_non_positive: bool = False
    categories: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.source not in SOURCES:
            raise ValueError(f"Unknown board source {self.source!r} for board {self.key!r}.")


DEFAULT_BOARDS: Tuple[BoardSpec, ...] = (
    BoardSpec("total", SOURCE_TOTAL),
    BoardSpec("weekly", SOURCE_WEEKLY),
    BoardSpec("lifetime", SOURCE_LIFETIME),
    BoardSpec(
        "skill_pulse_today",
        SOURCE_CYCLE,
        exclude_non_positive=True,
        categories=("skill_pulse",),
    ),
)


def boards_from_config(raw: Optional[Iterable[Any]]) -> Tuple[BoardSpec, ...]:
    """Accept BoardSpec objects or plain dicts from ``LEADERBOARD_BOARDS``."""
    if not raw:
        return DEFAULT_BOARDS
    specs: List[BoardSpec] = []
    for entry in raw:
        if isinstance(entry, BoardSpec):
            specs.append(entry)
            continue
        specs.append(
            BoardSpec(
                key=str(entry["key"]),
                source=str(entry.get("source") or SOURCE_TOTAL),
                higher_is_better=bool(entry.get("higher_is_better", True)),
                exclude_non_positive=bool(entry.get("exclude_non_positive", False)),
                categories=tuple(entry.get("categories") or ()),
            )
        )
    return tuple(specs)


def configured_policy() -> CyclePolicy:
    if has_app_context():
        return cycle_keys.policy_from_config(current_app.config)
    return CyclePolicy()


def configured_boards() -> Tuple[BoardSpec, ...]:
    if has_app_context():
        return boards_from_config(current_app.config.get("LEADERBOARD_BOARDS"))
    return DEFAULT_BOARDS


def cycle_info(policy: Optional[CyclePolicy] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    policy = policy or configured_policy()
    key = cycle_keys.current_cycle_key(policy, now)
    start, end = cycle_keys.bounds(key, policy)
    return {
        "ok": True,
        "cycle_key": key,
        "starts_at": start.isoformat(),
        "ends_at": end.isoformat(),
        "policy": policy.kind,
        "timezone": policy.timezone_name,
    }


def get_or_build(
    cycle_key: str,
    *,
    now: Optional[datetime] = None,
    policy: Optional[CyclePolicy] = None,
    boards: Optional[Sequence[BoardSpec]] = None,
) -> Dict[str, Any]:
    """Return the cycle's snapshot, materialising any board that has not been built yet."""
    policy = policy or configured_policy()
    boards = tuple(boards or configured_boards())
    now = cycle_keys.ensure_utc(now) or cycle_keys.utc_now()
    _validate_cycle(cycle_key, policy, now)

    board_keys = [spec.key for spec in boards]
    built_keys = _built_board_keys(cycle_key, board_keys)
    missing = [spec for spec in boards if spec.key not in built_keys]
    if not missing:
        return _result(cycle_key, board_keys, built=False)

    try:
        for spec in missing:
            _stage_board(spec, cycle_key, policy, now)
        db.session.commit()
    except IntegrityError:
        # Another builder committed first; its rows are the snapshot.
        db.session.rollback()
        if _built_board_keys(cycle_key, board_keys) != set(board_keys):
            raise StoreFailure("Snapshot build conflicted and left the cycle incomplete.")
        return _result(cycle_key, board_keys, built=False)
    except SQLAlchemyError as exc:
        db.session.rollback()
        _log_store_error("building snapshot", cycle_key, exc)
        raise StoreFailure("Failed to build leaderboard snapshot.") from exc

    return _result(cycle_key, board_keys, built=True)


def rebuild(
    cycle_key: str,
    *,
    now: Optional[datetime] = None,
    policy: Optional[CyclePolicy] = None,
    boards: Optional[Sequence[BoardSpec]] = None,
) -> Dict[str, Any]:
    """Replace every configured board of the cycle in a single transaction."""
    policy = policy or configured_policy()
    boards = tuple(boards or configured_boards())
    now = cycle_keys.ensure_utc(now) or cycle_keys.utc_now()
    _validate_cycle(cycle_key, policy, now)

    board_keys = [spec.key for spec in boards]
    try:
        (
            LeaderboardSnapshotBoard.query.filter(
                LeaderboardSnapshotBoard.cycle_key == cycle_key,
                LeaderboardSnapshotBoard.board_key.in_(board_keys),
            )
            .with_for_update()
            .all()
        )
        LeaderboardSnapshotRow.query.filter(
            LeaderboardSnapshotRow.cycle_key == cycle_key,
            LeaderboardSnapshotRow.board_key.in_(board_keys),
        ).delete(synchronize_session=False)
        LeaderboardSnapshotBoard.query.filter(
            LeaderboardSnapshotBoard.cycle_key == cycle_key,
            LeaderboardSnapshotBoard.board_key.in_(board_keys),
        ).delete(synchronize_session=False)
        db.session.flush()

        for spec in boards:
            _stage_board(spec, cycle_key, policy, now)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        _log_store_error("rebuilding snapshot", cycle_key, exc)
        raise StoreFailure("Failed to rebuild leaderboard snapshot.") from exc

    return _result(cycle_key, board_keys, built=True)


def rank_scores(scores: Mapping[str, int], spec: BoardSpec) -> List[Tuple[str, int, int]]:
    """Rank ``{participant_id: score}`` by position; equal scores go to the lower participant id first."""
    items = [
        (pid, int(score))
        for pid, score in scores.items()
        if not (spec.exclude_non_positive and score <= 0)
    ]
    if spec.higher_is_better:
        items.sort(key=lambda item: (-item[1], item[0]))
    else:
        items.sort(key=lambda item: (item[1], item[0]))
    return [(pid, position, score) for position, (pid, score) in enumerate(items, start=1)]


@dataclass
class SnapshotBundle:
    """Per-participant view over one cycle's snapshot, computed once per request."""

    cycle_key: str
    boards: Dict[str, List[Dict[str, Any]]]
    _index: Dict[str, Dict[str, Dict[str, int]]] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        for board_key, rows in self.boards.items():
            for row in rows:
                self._index.setdefault(row["participant_id"], {})[board_key] = {
                    "rank": row["rank"],
                    "score": row["score"],
                }

    @classmethod
    def from_result(cls, result: Mapping[str, Any]) -> "SnapshotBundle":
        return cls(cycle_key=result["cycle_key"], boards=dict(result["boards"]))

    def placements(self, participant_id: str) -> Dict[str, Dict[str, int]]:
        return dict(self._index.get(str(participant_id), {}))

    def best_rank(self, participant_id: str) -> Optional[int]:
        ranks = [entry["rank"] for entry in self._index.get(str(participant_id), {}).values()]
        return min(ranks) if ranks else None


def load_bundle(cycle_key: str, **kwargs) -> SnapshotBundle:
    return SnapshotBundle.from_result(get_or_build(cycle_key, **kwargs))


def _validate_cycle(cycle_key: str, policy: CyclePolicy, now: datetime) -> None:
    if not cycle_keys.is_cycle_key(cycle_key):
        raise ValidationFailed("Invalid cycle_key; expected YYYY-MM-DD.")
    if cycle_key > cycle_keys.current_cycle_key(policy, now):
        raise ValidationFailed("Cannot snapshot a cycle that has not started.")


def _built_board_keys(cycle_key: str, board_keys: Sequence[str]) -> set:
    rows = (
        db.session.query(LeaderboardSnapshotBoard.board_key)
        .filter(
            LeaderboardSnapshotBoard.cycle_key == cycle_key,
            LeaderboardSnapshotBoard.board_key.in_(board_keys),
        )
        .all()
    )
    return {row[0] for row in rows}


def _stage_board(spec: BoardSpec, cycle_key: str, policy: CyclePolicy, now: datetime) -> None:
    ranked = rank_scores(_aggregate_scores(spec, cycle_key, policy, now), spec)
    db.session.add(
        LeaderboardSnapshotBoard(
            cycle_key=cycle_key,
            board_key=spec.key,
            participant_count=len(ranked),
            built_at=now,
        )
    )
    for pid, rank, score in ranked:
        db.session.add(
            LeaderboardSnapshotRow(
                board_key=spec.key,
                cycle_key=cycle_key,
                participant_id=pid,
                rank=rank,
                score=score,
            )
        )
    db.session.flush()


def _aggregate_scores(
    spec: BoardSpec, cycle_key: str, policy: CyclePolicy, now: datetime
) -> Dict[str, int]:
    start, end = cycle_keys.bounds(cycle_key, policy)
    as_of = min(now, end)

    query = (
        db.session.query(LedgerEntry.student_id, func.coalesce(func.sum(LedgerEntry.points), 0))
        .join(Student, Student.id == LedgerEntry.student_id)
        .filter(Student.active.is_(True), LedgerEntry.created_at < as_of)
    )
    if spec.source == SOURCE_LIFETIME:
        query = query.filter(LedgerEntry.points > 0)
    elif spec.source == SOURCE_WEEKLY:
        week_start, _ = cycle_keys.bounds(cycle_keys.week_start_key(cycle_key), policy)
        query = query.filter(LedgerEntry.created_at >= week_start)
    elif spec.source == SOURCE_CYCLE:
        query = query.filter(LedgerEntry.created_at >= start, LedgerEntry.points > 0)
        if spec.categories:
            query = query.filter(LedgerEntry.category.in_(spec.categories))

    sums = {str(pid): int(total or 0) for pid, total in query.group_by(LedgerEntry.student_id).all()}
    if spec.source == SOURCE_CYCLE:
        return sums

    # Standing boards list every active student, including those with no ledger rows.
    active_ids = [row[0] for row in db.session.query(Student.id).filter(Student.active.is_(True)).all()]
    return {str(pid): sums.get(str(pid), 0) for pid in active_ids}


def _result(cycle_key: str, board_keys: Sequence[str], *, built: bool) -> Dict[str, Any]:
    rows: List[LeaderboardSnapshotRow] = (
        LeaderboardSnapshotRow.query.filter(
            LeaderboardSnapshotRow.cycle_key == cycle_key,
            LeaderboardSnapshotRow.board_key.in_(board_keys),
        )
        .order_by(LeaderboardSnapshotRow.rank.asc(), LeaderboardSnapshotRow.participant_id.asc())
        .all()
    )
    boards: Dict[str, List[Dict[str, Any]]] = {key: [] for key in board_keys}
    for row in rows:
        boards[row.board_key].append(row.to_public_dict())
    return {"ok": True, "cycle_key": cycle_key, "boards": boards, "built": built}


def _log_store_error(action: str, cycle_key: str, exc: Exception) -> None:
    if has_app_context():
        current_app.logger.exception("Leaderboard store error while %s for %s: %s", action, cycle_key, exc)
