"""JSON endpoints for the cycle key and leaderboard snapshots."""

from __future__ import annotations

from typing import Callable, Optional

from flask import Blueprint, jsonify, request

import cycle_keys
from access import ROLE_ADMIN, ROLE_COACH, resolve_access
from errors import AuthorizationDenied, CoreServiceError
from . import service

UserProvider = Callable[[], Optional[str]]


def create_leaderboard_blueprint(current_user_provider: UserProvider) -> Blueprint:
    """Factory so the app can inject its session/bearer identity lookup."""

    bp = Blueprint("leaderboard", __name__, url_prefix="/api/leaderboard")

    @bp.get("/cycle")
    def current_cycle():
        try:
            resolve_access(current_user_provider())
            return jsonify(service.cycle_info())
        except CoreServiceError as exc:
            return jsonify(exc.payload), exc.status_code

    @bp.get("/snapshots")
    def snapshots():
        cycle_key = (request.args.get("cycle_key") or "").strip()
        try:
            resolve_access(current_user_provider())
            if not cycle_key:
                cycle_key = cycle_keys.current_cycle_key(service.configured_policy())
            return jsonify(service.get_or_build(cycle_key))
        except CoreServiceError as exc:
            return jsonify(exc.payload), exc.status_code

    @bp.post("/snapshots/<cycle_key>/rebuild")
    def rebuild_snapshot(cycle_key: str):
        try:
            roles = resolve_access(current_user_provider())
            if not roles & {ROLE_ADMIN, ROLE_COACH}:
                raise AuthorizationDenied("Admin or coach access required.")
            return jsonify(service.rebuild(cycle_key))
        except CoreServiceError as exc:
            return jsonify(exc.payload), exc.status_code

    return bp
