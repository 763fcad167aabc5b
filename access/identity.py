"""Work out who is calling: session login first, then a Supabase bearer token."""

from __future__ import annotations

from typing import Optional

from flask import current_app, request, session

from errors import AuthenticationMissing


def current_user_id() -> Optional[str]:
    user_id = session.get("user_id")
    if user_id:
        return str(user_id)

    token = _bearer_token()
    if not token:
        return None
    return _user_id_from_supabase(token)


def require_user_id() -> str:
    user_id = current_user_id()
    if not user_id:
        raise AuthenticationMissing("Not authenticated.")
    return user_id


def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def _user_id_from_supabase(token: str) -> Optional[str]:
    if not current_app.config.get("USE_SUPABASE"):
        return None
    client = current_app.config.get("SUPABASE_CLIENT")
    if client is None:
        return None
    try:
        response = client.auth.get_user(token)
    except Exception as exc:  # pragma: no cover - external service dependency
        current_app.logger.warning("Supabase token lookup failed: %s", exc)
        return None
    user = getattr(response, "user", None)
    user_id = getattr(user, "id", None)
    return str(user_id) if user_id else None
