"""Scheduled gift auto-assignment."""

from .routes import create_gifts_admin_blueprint

__all__ = ["create_gifts_admin_blueprint"]
