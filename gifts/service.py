"""Auto-gift scheduler: fire due rule occurrences exactly once per student."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set

from flask import current_app, has_app_context
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import cycle_keys
from cycle_keys import CyclePolicy
from errors import ConflictAlreadyApplied, CoreServiceError, NotFound, StoreFailure, ValidationFailed
from extensions import db
from gifts import schedule
from gifts.models import RUN_GRANTED, RUN_SKIPPED, GiftAutoAssignmentRule, GiftAutoAssignmentRun
from ledger import grant_gift
from leaderboard.service import configured_policy
from models import GiftItem, GroupMembership, Student

TARGET_EXPLICIT = "explicit"
TARGET_ALL_ACTIVE = "all_active"
TARGET_GROUP = "group"
TARGET_KINDS = (TARGET_EXPLICIT, TARGET_ALL_ACTIVE, TARGET_GROUP)

DEFAULT_EXPIRY_DAYS = 3
DEFAULT_MAX_OCCURRENCES = 31
AUTO_GIFT_ACTOR = "auto_gift"


class OccurrenceAlreadyFired(ConflictAlreadyApplied):
    """Another runner advanced the rule's watermark first."""


def run_due(
    now: Optional[datetime] = None,
    *,
    dry_run: bool = False,
    granted_by: Optional[str] = None,
    policy: Optional[CyclePolicy] = None,
) -> Dict[str, Any]:
    """Fire every due occurrence of every enabled rule.

    Without ``catch_up`` only the newest due occurrence fires and older ones are reported as
    skipped; with it, occurrences fire oldest first up to ``GIFT_MAX_OCCURRENCES_PER_RUN``.
    """
    now = cycle_keys.ensure_utc(now) or cycle_keys.utc_now()
    policy = policy or configured_policy()
    max_occurrences = _config_int("GIFT_MAX_OCCURRENCES_PER_RUN", DEFAULT_MAX_OCCURRENCES)

    rules: List[GiftAutoAssignmentRule] = (
        GiftAutoAssignmentRule.query.filter_by(enabled=True).order_by(GiftAutoAssignmentRule.id.asc()).all()
    )
    fired: List[Dict[str, Any]] = []
    skipped: List[Dict[str, Any]] = []
    already: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []

    for rule in rules:
        rule_id = rule.id
        try:
            spec = schedule_for(rule, policy)
        except ValueError as exc:
            _log_warning("Auto gift rule %s has an invalid schedule: %s", rule_id, exc)
            errors.append({"rule_id": rule_id, "error": str(exc)})
            continue

        item = db.session.get(GiftItem, rule.gift_item_id)
        if item is None or not item.enabled:
            errors.append({"rule_id": rule_id, "error": "gift_item_unavailable"})
            continue

        watermark = rule.last_fired_occurrence
        after = schedule.parse_occurrence_id(watermark) if watermark else None
        due = schedule.occurrences_between(spec, after, now)
        if not due:
            continue

        if rule.catch_up:
            to_fire = due[:max_occurrences]
        else:
            to_fire = due[-1:]
            skipped.extend(
                {"rule_id": rule_id, "occurrence_id": schedule.occurrence_id(instant), "reason": "superseded"}
                for instant in due[:-1]
            )

        for instant in to_fire:
            occ_id = schedule.occurrence_id(instant)
            targets = resolve_targets(rule, instant, policy)
            pre_skipped = _skipped_students(rule_id, occ_id)
            recipients = [sid for sid in targets if sid not in pre_skipped]

            if dry_run:
                fired.append(
                    {
                        "rule_id": rule_id,
                        "occurrence_id": occ_id,
                        "grants": [
                            {"student_id": sid, "gift_item_id": rule.gift_item_id, "qty": rule.quantity}
                            for sid in recipients
                        ],
                        "skipped_students": sorted(pre_skipped),
                    }
                )
                continue

            try:
                grants = _fire_occurrence(rule, instant, occ_id, recipients, watermark, now, granted_by)
            except OccurrenceAlreadyFired:
                already.append({"rule_id": rule_id, "occurrence_id": occ_id})
                break
            except CoreServiceError as exc:
                _log_warning("Auto gift rule %s failed at %s: %s", rule_id, occ_id, exc.message)
                errors.append({"rule_id": rule_id, "occurrence_id": occ_id, "error": exc.message})
                break
            watermark = occ_id
            fired.append(
                {
                    "rule_id": rule_id,
                    "occurrence_id": occ_id,
                    "grants": grants,
                    "skipped_students": sorted(pre_skipped),
                }
            )

    return {
        "ok": True,
        "dry_run": dry_run,
        "now": now.isoformat(),
        "checked": len(rules),
        "fired": fired,
        "skipped_occurrences": skipped,
        "already_fired": already,
        "errors": errors,
    }


def skip_occurrence(
    rule_id: str,
    student_id: str,
    occurrence_id: str,
    *,
    now: Optional[datetime] = None,
    skipped_by: Optional[str] = None,
    policy: Optional[CyclePolicy] = None,
) -> Dict[str, Any]:
    """Stop one future occurrence of a rule from granting to one student."""
    now = cycle_keys.ensure_utc(now) or cycle_keys.utc_now()
    rule = db.session.get(GiftAutoAssignmentRule, rule_id)
    if rule is None:
        raise NotFound("Auto gift rule not found.")
    if db.session.get(Student, student_id) is None:
        raise NotFound(f"Student {student_id} not found.")
    try:
        instant = schedule.parse_occurrence_id(occurrence_id)
    except ValueError as exc:
        raise ValidationFailed(str(exc)) from exc

    if instant <= now:
        raise ValidationFailed("Only future occurrences can be skipped.")
    if not schedule.is_occurrence(schedule_for(rule, policy or configured_policy()), instant):
        raise ValidationFailed("That time is not a scheduled occurrence of this rule.")

    db.session.add(
        GiftAutoAssignmentRun(
            rule_id=rule.id,
            occurrence_id=occurrence_id,
            student_id=student_id,
            status=RUN_SKIPPED,
            created_by=skipped_by,
        )
    )
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return {"ok": True, "already_skipped": True, "rule_id": rule_id, "occurrence_id": occurrence_id}
    except SQLAlchemyError as exc:
        db.session.rollback()
        _log_exception("Auto gift skip failed for %s/%s: %s", rule_id, occurrence_id, exc)
        raise StoreFailure("Failed to record skip.") from exc
    return {"ok": True, "already_skipped": False, "rule_id": rule_id, "occurrence_id": occurrence_id}


def create_rule(
    *,
    name: str,
    gift_item_id: str,
    schedule_kind: str,
    anchor_at: Any,
    target_selector: Dict[str, Any],
    quantity: int = 1,
    interval_days: Optional[int] = None,
    day_codes: Optional[Iterable[str]] = None,
    time_local: Optional[str] = None,
    active_from: Optional[Any] = None,
    active_until: Optional[Any] = None,
    catch_up: bool = False,
    created_by: Optional[str] = None,
    policy: Optional[CyclePolicy] = None,
) -> Dict[str, Any]:
    policy = policy or configured_policy()
    name = (name or "").strip()
    if not name:
        raise ValidationFailed("Rule name is required.")
    item = db.session.get(GiftItem, gift_item_id) if gift_item_id else None
    if item is None:
        raise NotFound("Gift item not found.")
    try:
        qty = int(quantity)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed("quantity must be a whole number.") from exc
    if qty < 1:
        raise ValidationFailed("quantity must be at least 1.")

    anchor = cycle_keys.parse_instant(anchor_at)
    if anchor is None:
        raise ValidationFailed("anchor_at must be an ISO-8601 instant.")
    start_day = _parse_date(active_from, "active_from")
    end_day = _parse_date(active_until, "active_until")
    try:
        spec = schedule.ScheduleSpec(
            kind=schedule_kind,
            anchor_at=anchor,
            interval_days=int(interval_days) if interval_days is not None else None,
            day_codes=tuple(day_codes or ()),
            time_local=time_local,
            timezone_name=policy.timezone_name,
            active_from=start_day,
            active_until=end_day,
        )
    except (TypeError, ValueError) as exc:
        raise ValidationFailed(str(exc)) from exc
    selector = _validate_selector(target_selector)

    rule = GiftAutoAssignmentRule(
        name=name,
        gift_item_id=item.id,
        quantity=qty,
        schedule_kind=spec.kind,
        anchor_at=spec.anchor_at,
        interval_days=spec.interval_days,
        day_codes=list(spec.day_codes),
        time_local=time_local,
        active_from=start_day,
        active_until=end_day,
        catch_up=bool(catch_up),
        target_selector=selector,
        enabled=True,
        created_by=created_by,
    )
    db.session.add(rule)
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        _log_exception("Auto gift rule create failed: %s", exc)
        raise StoreFailure("Failed to create auto gift rule.") from exc
    return {"ok": True, "rule": rule.to_public_dict()}


def schedule_for(rule: GiftAutoAssignmentRule, policy: CyclePolicy) -> schedule.ScheduleSpec:
    return schedule.ScheduleSpec(
        kind=rule.schedule_kind,
        anchor_at=cycle_keys.ensure_utc(rule.anchor_at),
        interval_days=rule.interval_days,
        day_codes=tuple(rule.day_codes or ()),
        time_local=rule.time_local,
        timezone_name=policy.timezone_name,
        active_from=rule.active_from,
        active_until=rule.active_until,
    )


def resolve_targets(rule: GiftAutoAssignmentRule, instant: datetime, policy: CyclePolicy) -> List[str]:
    selector = rule.target_selector or {}
    kind = selector.get("kind") or TARGET_EXPLICIT
    explicit = {str(sid) for sid in selector.get("student_ids") or [] if sid}

    active_query = db.session.query(Student.id).filter(Student.active.is_(True))
    if kind == TARGET_ALL_ACTIVE:
        return sorted(str(row[0]) for row in active_query.all())

    if kind == TARGET_EXPLICIT:
        if not explicit:
            return []
        return sorted(str(row[0]) for row in active_query.filter(Student.id.in_(explicit)).all())

    day_code = schedule.day_code_for(instant, policy.timezone_name)
    query = (
        db.session.query(GroupMembership)
        .join(Student, Student.id == GroupMembership.student_id)
        .filter(
            GroupMembership.group_key == selector.get("group"),
            GroupMembership.enabled.is_(True),
            Student.active.is_(True),
        )
    )
    if selector.get("role"):
        query = query.filter(GroupMembership.role == selector["role"])

    local_day = instant.astimezone(policy.tz).date()
    members: Set[str] = set()
    for membership in query.all():
        codes = membership.day_codes or []
        if codes and day_code not in codes:
            continue
        if membership.starts_on and local_day < membership.starts_on:
            continue
        if membership.ends_on and local_day > membership.ends_on:
            continue
        members.add(str(membership.student_id))
    if explicit:
        members &= explicit
    return sorted(members)


def _fire_occurrence(
    rule: GiftAutoAssignmentRule,
    instant: datetime,
    occ_id: str,
    recipients: List[str],
    expected_watermark: Optional[str],
    now: datetime,
    granted_by: Optional[str],
) -> List[Dict[str, Any]]:
    """One transaction: run rows, gifts, then the watermark compare-and-set."""
    rule_id = rule.id
    gift_item_id = rule.gift_item_id
    quantity = rule.quantity
    note = f"Auto gift: {rule.name}"
    expires_at = instant + timedelta(days=_config_int("GIFT_EXPIRY_DAYS", DEFAULT_EXPIRY_DAYS))
    actor = granted_by or AUTO_GIFT_ACTOR

    grants: List[Dict[str, Any]] = []
    try:
        for student_id in recipients:
            gift = grant_gift(
                student_id,
                gift_item_id,
                qty=quantity,
                expires_at=expires_at,
                granted_by=actor,
                note=note,
                source_rule_id=rule_id,
                source_occurrence=occ_id,
            )
            db.session.add(
                GiftAutoAssignmentRun(
                    rule_id=rule_id,
                    occurrence_id=occ_id,
                    student_id=student_id,
                    status=RUN_GRANTED,
                    student_gift_id=gift.id,
                    created_by=actor,
                )
            )
            grants.append({"student_id": student_id, "student_gift_id": gift.id, "qty": quantity})
        db.session.flush()

        watermark_column = GiftAutoAssignmentRule.last_fired_occurrence
        guard = watermark_column.is_(None) if expected_watermark is None else watermark_column == expected_watermark
        result = db.session.execute(
            update(GiftAutoAssignmentRule)
            .where(GiftAutoAssignmentRule.id == rule_id, guard)
            .values(last_fired_occurrence=occ_id, last_fired_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            raise OccurrenceAlreadyFired(occ_id)
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise OccurrenceAlreadyFired(occ_id) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        _log_exception("Auto gift run failed for %s/%s: %s", rule_id, occ_id, exc)
        raise StoreFailure("Failed to record auto gift run.") from exc
    except CoreServiceError:
        # e.g. the gift item was disabled after the pre-check; nothing staged may survive.
        db.session.rollback()
        raise
    return grants


def _skipped_students(rule_id: str, occ_id: str) -> Set[str]:
    rows = (
        db.session.query(GiftAutoAssignmentRun.student_id)
        .filter_by(rule_id=rule_id, occurrence_id=occ_id, status=RUN_SKIPPED)
        .all()
    )
    return {str(row[0]) for row in rows}


def _validate_selector(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise ValidationFailed("target_selector must be an object.")
    kind = raw.get("kind") or TARGET_EXPLICIT
    if kind not in TARGET_KINDS:
        raise ValidationFailed(f"Unknown target kind {kind!r}.")
    selector: Dict[str, Any] = {"kind": kind}
    student_ids = raw.get("student_ids") or []
    if not isinstance(student_ids, list):
        raise ValidationFailed("student_ids must be a list.")
    if student_ids:
        selector["student_ids"] = sorted({str(sid) for sid in student_ids if sid})
    if kind == TARGET_EXPLICIT and not selector.get("student_ids"):
        raise ValidationFailed("Explicit targets need student_ids.")
    if kind == TARGET_GROUP:
        group = str(raw.get("group") or "").strip()
        if not group:
            raise ValidationFailed("Group targets need a group key.")
        selector["group"] = group
        if raw.get("role"):
            selector["role"] = str(raw["role"])
    return selector


def _parse_date(value: Any, field_name: str) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationFailed(f"{field_name} must be YYYY-MM-DD.") from exc


def _config_int(key: str, default: int) -> int:
    if not has_app_context():
        return default
    return int(current_app.config.get(key, default))


def _log_warning(message: str, *args) -> None:
    if has_app_context():
        current_app.logger.warning(message, *args)


def _log_exception(message: str, *args) -> None:
    if has_app_context():
        current_app.logger.exception(message, *args)
