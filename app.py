import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, jsonify
from supabase import create_client

import cycle_keys
from access import current_user_id
from daily_redeem import create_daily_redeem_blueprint
from extensions import db
from gifts import create_gifts_admin_blueprint
from leaderboard import create_leaderboard_blueprint
from skill_countdown import create_skill_countdown_blueprint

# Table modules must be imported before create_all.
import daily_redeem.models  # noqa: F401
import gifts.models  # noqa: F401
import leaderboard.models  # noqa: F401
import models  # noqa: F401
import skill_countdown.models  # noqa: F401


def _env_flag(name: str, default: bool) -> bool:
    """Parse truthy feature-toggle values from the environment."""
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        print(f"⚠️ Ignoring invalid {name}={value!r}; using {default}")
        return default


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_points_map(name: str, default: Dict[str, int]) -> Dict[str, int]:
    """Parse ``role:points`` pairs such as ``seller:300,cleaner:500``."""
    value = os.environ.get(name)
    if value is None or not value.strip():
        return dict(default)
    parsed: Dict[str, int] = {}
    for pair in value.split(","):
        role, _, points = pair.partition(":")
        try:
            parsed[role.strip().lower()] = int(points)
        except ValueError:
            print(f"⚠️ Ignoring invalid {name}={value!r}; using {default}")
            return dict(default)
    return parsed


def _settings_from_env(root_path: str) -> dict:
    data_dir = Path(root_path) / "data"
    return {
        "SQLALCHEMY_DATABASE_URI": _env_str("DATABASE_URL", None) or f"sqlite:///{data_dir / 'app.db'}",
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        # ====== Cycle policy (shared by snapshots, redeems and routes) ======
        "CYCLE_POLICY": _env_str("CYCLE_POLICY", cycle_keys.POLICY_ROLLOVER),
        "CYCLE_TIMEZONE": _env_str("CYCLE_TIMEZONE", cycle_keys.DEFAULT_TIMEZONE),
        "CYCLE_ROLLOVER_HOUR": _env_int("CYCLE_ROLLOVER_HOUR", cycle_keys.DEFAULT_ROLLOVER_HOUR),
        "CYCLE_ROLLOVER_MINUTE": _env_int("CYCLE_ROLLOVER_MINUTE", 0),
        "CYCLE_LABEL": _env_str("CYCLE_LABEL", cycle_keys.LABEL_START),
        # ====== Daily redeem ======
        "DAILY_REDEEM_RANK_THRESHOLD": _env_int("DAILY_REDEEM_RANK_THRESHOLD", 10),
        "DAILY_REDEEM_POINTS_TOP1": _env_int("DAILY_REDEEM_POINTS_TOP1", 30),
        "DAILY_REDEEM_POINTS_TOP_N": _env_int("DAILY_REDEEM_POINTS_TOP_N", 15),
        "DAILY_REDEEM_GROUP_ROLE_POINTS": _env_points_map(
            "DAILY_REDEEM_GROUP_ROLE_POINTS", {"seller": 300, "cleaner": 500}
        ),
        "STRICT_BATCH_ACCESS": _env_flag("STRICT_BATCH_ACCESS", True),
        # ====== Gifts & countdowns ======
        "GIFT_EXPIRY_DAYS": _env_int("GIFT_EXPIRY_DAYS", 3),
        "GIFT_MAX_OCCURRENCES_PER_RUN": _env_int("GIFT_MAX_OCCURRENCES_PER_RUN", 31),
        "SKILL_PENALTY_MAX_RATIO_PERCENT": _env_int("SKILL_PENALTY_MAX_RATIO_PERCENT", 8),
        "LEDGER_REFRESH_URL": _env_str("LEDGER_REFRESH_URL", None),
        # ====== Supabase (bearer-token identity) ======
        "USE_SUPABASE": _env_flag("USE_SUPABASE", False),
        "SUPABASE_URL": _env_str("SUPABASE_URL", None),
        "SUPABASE_KEY": _env_str("SUPABASE_KEY", None),
    }


def _init_supabase(app: Flask) -> Any:
    if not app.config.get("USE_SUPABASE"):
        return None
    url = app.config.get("SUPABASE_URL")
    key = app.config.get("SUPABASE_KEY")
    if not url or not key:
        print("⚠️ USE_SUPABASE is on but SUPABASE_URL/SUPABASE_KEY are missing; bearer tokens disabled")
        return None
    try:
        return create_client(url, key)
    except Exception as e:
        print("⚠️ Could not init Supabase client:", e)
        return None


def create_app(test_config: Optional[dict] = None) -> Flask:
    app = Flask(__name__)
    app.permanent_session_lifetime = timedelta(days=365)

    if test_config:
        app.config.update(test_config)
    for key, value in _settings_from_env(app.root_path).items():
        app.config.setdefault(key, value)
    # Flask pre-populates SECRET_KEY with None.
    if not app.config.get("SECRET_KEY"):
        app.config["SECRET_KEY"] = _env_str("SECRET_KEY", None) or os.urandom(24)

    # Fail at start-up rather than on the first request.
    cycle_keys.policy_from_config(app.config)

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///"):
        (Path(app.root_path) / "data").mkdir(parents=True, exist_ok=True)
    db.init_app(app)

    app.config.setdefault("SUPABASE_CLIENT", _init_supabase(app))

    app.register_blueprint(create_leaderboard_blueprint(current_user_id))
    app.register_blueprint(create_daily_redeem_blueprint(current_user_id))
    app.register_blueprint(create_gifts_admin_blueprint(current_user_id))
    app.register_blueprint(create_skill_countdown_blueprint(current_user_id))

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"ok": False, "error": "Not found", "code": "not_found"}), 404

    @app.errorhandler(500)
    def internal_error(_error):
        return jsonify({"ok": False, "error": "Internal error", "code": "internal_failure"}), 500

    with app.app_context():
        db.create_all()

    return app


# ====== Entrypoint ======
if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.environ.get("PORT", 8080)), debug=True)
