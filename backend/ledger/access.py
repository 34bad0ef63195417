from datetime import datetime, timedelta, timezone
import secrets
import threading
from typing import Any
from uuid import UUID

from fastapi import Cookie, Header

from .config import settings
from .errors import Unauthorized

SESSION_COOKIE_NAME = "ledger_session"

active_sessions: dict[str, dict[str, Any]] = {}
_sessions_lock = threading.Lock()


def create_session(user_id: UUID) -> str:
    token = secrets.token_urlsafe(32)
    with _sessions_lock:
        active_sessions[token] = {"user_id": user_id, "last_seen": datetime.now(timezone.utc)}
    return token


def revoke_session(token: str | None) -> None:
    if not token:
        return
    with _sessions_lock:
        active_sessions.pop(token, None)


def authenticate(token: str | None, timeout_minutes: int | None = None) -> UUID | None:
    if not token:
        return None
    timeout = timeout_minutes if timeout_minutes is not None else settings.session_timeout_minutes
    now = datetime.now(timezone.utc)
    with _sessions_lock:
        session = active_sessions.get(token)
        if session is None:
            return None
        if timeout and (now - session["last_seen"]) > timedelta(minutes=timeout):
            del active_sessions[token]
            return None
        session["last_seen"] = now
        return session["user_id"]


def token_from_header(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise Unauthorized("invalid Authorization header")
    return parts[1].strip()


def require_token(
    authorization: str | None = Header(default=None),
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> str:
    token = token_from_header(authorization) or session_token
    if not token:
        raise Unauthorized("missing session token")
    return token


def require_user(
    authorization: str | None = Header(default=None),
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> UUID:
    user_id = authenticate(require_token(authorization, session_token))
    if user_id is None:
        raise Unauthorized("invalid or expired token")
    return user_id
