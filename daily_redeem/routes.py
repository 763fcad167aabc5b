"""Daily redeem JSON endpoints (status, batch status, claim)."""

from __future__ import annotations

from typing import Callable, Optional

from flask import Blueprint, jsonify, request

import cycle_keys
from access import require_batch_access, resolve_access
from errors import AuthenticationMissing, CoreServiceError, ValidationFailed
from leaderboard.service import configured_policy, load_bundle
from . import service

UserProvider = Callable[[], Optional[str]]


def create_daily_redeem_blueprint(current_user_provider: UserProvider) -> Blueprint:
    bp = Blueprint("daily_redeem", __name__, url_prefix="/api/daily-redeem")

    @bp.post("/status")
    def status():
        payload = request.get_json(silent=True) or {}
        try:
            user_id = _require_user(current_user_provider)
            student_id = _require_student_id(payload)
            resolve_access(user_id, student_id)
            cycle_key = _cycle_key_from(payload)
            bundle = load_bundle(cycle_key)
            result = service.compute_status(student_id, bundle, cycle_key)
        except CoreServiceError as exc:
            return jsonify(exc.payload), exc.status_code
        return jsonify({"ok": True, **result})

    @bp.post("/status-batch")
    def status_batch():
        payload = request.get_json(silent=True) or {}
        raw_ids = payload.get("student_ids")
        try:
            user_id = _require_user(current_user_provider)
            if not isinstance(raw_ids, list) or not raw_ids:
                raise ValidationFailed("Missing student_ids.")
            student_ids = [str(pid).strip() for pid in raw_ids if str(pid or "").strip()]
            require_batch_access(user_id, student_ids)
            cycle_key = _cycle_key_from(payload)
            bundle = load_bundle(cycle_key)
            statuses = service.compute_statuses(student_ids, bundle, cycle_key)
        except CoreServiceError as exc:
            return jsonify(exc.payload), exc.status_code
        return jsonify({"ok": True, "cycle_key": cycle_key, "statuses": statuses})

    @bp.post("/claim")
    def claim():
        payload = request.get_json(silent=True) or {}
        try:
            user_id = _require_user(current_user_provider)
            student_id = _require_student_id(payload)
            resolve_access(user_id, student_id)
            # Claims always target the server's current cycle; a stale client key is rejected.
            requested = str(payload.get("cycle_key") or "").strip() or None
            result = service.claim(student_id, requested, claimed_by=user_id)
        except CoreServiceError as exc:
            return jsonify(exc.payload), exc.status_code
        return jsonify(result)

    return bp


def _require_user(current_user_provider: UserProvider) -> str:
    user_id = current_user_provider()
    if not user_id:
        raise AuthenticationMissing("Not authenticated.")
    return user_id


def _require_student_id(payload: dict) -> str:
    student_id = str(payload.get("student_id") or "").strip()
    if not student_id:
        raise ValidationFailed("Missing student_id.")
    return student_id


def _cycle_key_from(payload: dict) -> str:
    cycle_key = str(payload.get("cycle_key") or "").strip()
    if not cycle_key:
        return cycle_keys.current_cycle_key(configured_policy())
    if not cycle_keys.is_cycle_key(cycle_key):
        raise ValidationFailed("Invalid cycle_key; expected YYYY-MM-DD.")
    return cycle_key
