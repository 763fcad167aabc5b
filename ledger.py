"""Ledger and gift-inventory writes shared by redeem, gift and countdown services.

Helpers here only stage rows on ``db.session``; the calling service owns the commit so a
ledger grant always lands in the same transaction as the record that justifies it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import requests
from flask import current_app, has_app_context

from cycle_keys import utc_now
from errors import NotFound
from extensions import db
from models import GiftItem, LedgerEntry, Student, StudentGift


def record_points(
    student_id: str,
    points: int,
    *,
    category: str,
    note: Optional[str] = None,
    source: Optional[str] = None,
    created_by: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> LedgerEntry:
    """Stage a ledger delta and keep the student's cached totals in step."""
    student = db.session.get(Student, student_id)
    if student is None:
        raise NotFound(f"Student {student_id} not found.")

    entry = LedgerEntry(
        student_id=student_id,
        points=int(points),
        category=category,
        note=note,
        source=source,
        created_by=created_by,
        created_at=created_at or utc_now(),
    )
    db.session.add(entry)

    student.points_total = (student.points_total or 0) + int(points)
    if points > 0:
        student.lifetime_points = (student.lifetime_points or 0) + int(points)

    db.session.flush()
    return entry


def grant_gift(
    student_id: str,
    gift_item_id: str,
    *,
    qty: int = 1,
    expires_at: Optional[datetime] = None,
    granted_by: Optional[str] = None,
    note: Optional[str] = None,
    source_rule_id: Optional[str] = None,
    source_occurrence: Optional[str] = None,
) -> StudentGift:
    item = db.session.get(GiftItem, gift_item_id)
    if item is None or not item.enabled:
        raise NotFound(f"Gift item {gift_item_id} not found.")

    gift = StudentGift(
        student_id=student_id,
        gift_item_id=gift_item_id,
        qty=max(1, int(qty)),
        opened_qty=0,
        expires_at=expires_at,
        granted_by=granted_by,
        note=note,
        source_rule_id=source_rule_id,
        source_occurrence=source_occurrence,
    )
    db.session.add(gift)
    db.session.flush()
    return gift


def trigger_ledger_refresh(reason: str) -> bool:
    """Ping the optional downstream refresh hook after a committed ledger change."""
    if not has_app_context():
        return False
    url = current_app.config.get("LEDGER_REFRESH_URL")
    if not url:
        return False
    try:
        requests.get(url, params={"action": "ledgerRefresh", "reason": reason}, timeout=10)
        return True
    except requests.RequestException as exc:
        current_app.logger.warning("Ledger refresh hook failed (%s): %s", reason, exc)
        return False
