"""Skill deadline JSON endpoints (assign, complete, list, batch penalty run)."""

from __future__ import annotations

from typing import Callable, Optional

from flask import Blueprint, jsonify, request

from access import ROLE_ADMIN, ROLE_CLASSROOM, ROLE_COACH, require_roles, resolve_access
from errors import AuthorizationDenied, CoreServiceError, ValidationFailed
from . import service

UserProvider = Callable[[], Optional[str]]

ASSIGN_ROLES = {ROLE_ADMIN, ROLE_COACH, ROLE_CLASSROOM}
BATCH_ROLES = {ROLE_ADMIN, ROLE_COACH}


def create_skill_countdown_blueprint(current_user_provider: UserProvider) -> Blueprint:
    bp = Blueprint("skill_countdown", __name__, url_prefix="/api/skill-deadlines")

    @bp.post("/assign")
    def assign():
        payload = request.get_json(silent=True) or {}
        student_id = str(payload.get("student_id") or "").strip()
        try:
            user_id = current_user_provider()
            if not student_id:
                resolve_access(user_id)
                raise ValidationFailed("Missing student_id.")
            require_roles(user_id, student_id, ASSIGN_ROLES)
            result = service.assign(
                student_id,
                label=payload.get("label") or payload.get("source_label") or "",
                deadline_at=payload.get("deadline_at") or payload.get("due_at"),
                source_type=payload.get("source_type") or "manual",
                skill_id=payload.get("skill_id") or payload.get("source_key"),
                period_days=payload.get("period_days"),
                penalty_points=payload.get("penalty_points", service.DEFAULT_PENALTY_POINTS),
                reward_points=payload.get("reward_points", service.DEFAULT_REWARD_POINTS),
                note=payload.get("note"),
                assigned_by=user_id,
            )
        except CoreServiceError as exc:
            return jsonify(exc.payload), exc.status_code
        return jsonify(result)

    @bp.post("/complete")
    def complete():
        payload = request.get_json(silent=True) or {}
        entry_id = str(payload.get("assignment_id") or payload.get("entry_id") or "").strip()
        try:
            user_id = current_user_provider()
            resolve_access(user_id)
            if not entry_id:
                raise ValidationFailed("Missing assignment_id.")
            entry = service.get_entry(entry_id)
            resolve_access(user_id, entry.participant_id)
            result = service.complete(entry_id, completed_by=user_id)
        except CoreServiceError as exc:
            return jsonify(exc.payload), exc.status_code
        return jsonify(result)

    @bp.get("/list")
    def list_deadlines():
        student_id = (request.args.get("student_id") or "").strip()
        try:
            user_id = current_user_provider()
            if not student_id:
                resolve_access(user_id)
                raise ValidationFailed("Missing student_id.")
            resolve_access(user_id, student_id)
            penalties = service.process_penalties(student_id, user_id)
            snapshot = service.fetch_snapshot(student_id)
        except CoreServiceError as exc:
            return jsonify(exc.payload), exc.status_code
        snapshot["penalties_applied"] = penalties["penalties_applied"]
        return jsonify(snapshot)

    @bp.post("/process-all")
    def process_all():
        try:
            user_id = current_user_provider()
            if not resolve_access(user_id) & BATCH_ROLES:
                raise AuthorizationDenied("Admin or coach access required.")
            result = service.process_all(user_id)
        except CoreServiceError as exc:
            return jsonify(exc.payload), exc.status_code
        return jsonify(result)

    return bp
