"""Per-cycle leaderboard snapshots."""

from .routes import create_leaderboard_blueprint
from .service import BoardSpec, SnapshotBundle, get_or_build, load_bundle, rebuild

__all__ = [
    "BoardSpec",
    "SnapshotBundle",
    "create_leaderboard_blueprint",
    "get_or_build",
    "load_bundle",
    "rebuild",
]
