"""Shared Flask extensions used by the cycle, leaderboard, redeem, gift and countdown modules."""

from flask_sqlalchemy import SQLAlchemy

# SQLAlchemy instance initialized in app.create_app so blueprints/services can import `db`.
db = SQLAlchemy()
