"""Once-per-cycle redeem for top-ranked students."""

from .routes import create_daily_redeem_blueprint

__all__ = ["create_daily_redeem_blueprint"]
