"""Admin JSON endpoints for the auto-gift scheduler."""

from __future__ import annotations

from typing import Callable, Optional

from flask import Blueprint, jsonify, request

import cycle_keys
from access import ROLE_ADMIN, resolve_access
from errors import AuthorizationDenied, CoreServiceError, ValidationFailed
from . import service

UserProvider = Callable[[], Optional[str]]


def create_gifts_admin_blueprint(current_user_provider: UserProvider) -> Blueprint:
    bp = Blueprint("admin_gifts", __name__, url_prefix="/api/admin/gifts")

    def _require_admin() -> str:
        user_id = current_user_provider()
        if ROLE_ADMIN not in resolve_access(user_id):
            raise AuthorizationDenied("Admin access required.")
        return user_id

    @bp.post("/auto-run")
    def auto_run():
        payload = request.get_json(silent=True) or {}
        try:
            user_id = _require_admin()
            now = None
            if payload.get("now"):
                now = cycle_keys.parse_instant(payload.get("now"))
                if now is None:
                    raise ValidationFailed("now must be an ISO-8601 instant.")
            result = service.run_due(now, dry_run=bool(payload.get("dry_run")), granted_by=user_id)
        except CoreServiceError as exc:
            return jsonify(exc.payload), exc.status_code
        return jsonify(result)

    @bp.post("/auto-skip")
    def auto_skip():
        payload = request.get_json(silent=True) or {}
        rule_id = str(payload.get("rule_id") or "").strip()
        student_id = str(payload.get("student_id") or "").strip()
        occurrence_id = str(payload.get("occurrence_id") or "").strip()
        try:
            user_id = _require_admin()
            if not rule_id or not student_id or not occurrence_id:
                raise ValidationFailed("rule_id, student_id and occurrence_id are required.")
            result = service.skip_occurrence(rule_id, student_id, occurrence_id, skipped_by=user_id)
        except CoreServiceError as exc:
            return jsonify(exc.payload), exc.status_code
        return jsonify(result)

    @bp.post("/rules")
    def create_rule():
        payload = request.get_json(silent=True) or {}
        try:
            user_id = _require_admin()
            result = service.create_rule(
                name=payload.get("name") or "",
                gift_item_id=payload.get("gift_item_id") or "",
                schedule_kind=payload.get("schedule_kind") or "",
                anchor_at=payload.get("anchor_at"),
                target_selector=payload.get("target_selector") or {},
                quantity=payload.get("quantity", 1),
                interval_days=payload.get("interval_days"),
                day_codes=payload.get("day_codes") or [],
                time_local=payload.get("time_local"),
                active_from=payload.get("active_from"),
                active_until=payload.get("active_until"),
                catch_up=bool(payload.get("catch_up")),
                created_by=user_id,
            )
        except CoreServiceError as exc:
            return jsonify(exc.payload), exc.status_code
        return jsonify(result), 201

    return bp
