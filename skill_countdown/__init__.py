"""Skill deadline countdowns and lapse penalties."""

from .routes import create_skill_countdown_blueprint

__all__ = ["create_skill_countdown_blueprint"]
