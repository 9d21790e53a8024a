"""
Server-side sessions.

A session is a row in `user_sessions` keyed by an unguessable token. The token
carries no user data, so every resolve is a lookup and `destroy` revokes
immediately. Expiry slides forward on each successful resolve.
"""
from __future__ import annotations

import secrets
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.campsite.audit import record_event
from app.campsite.errors import InvalidCredentials
from app.campsite.identity import find_by_email
from app.campsite.models import User, UserSession
from app.campsite.passwords import verify_secret

DEFAULT_LIFETIME = timedelta(days=7)


def new_token() -> str:
    return secrets.token_urlsafe(32)


def is_local_path(path: str | None) -> bool:
    """Only same-site absolute paths may be used as redirect targets."""
    return bool(path) and path.startswith("/") and not path.startswith("//") and "\\" not in path


def _lookup(s: Session, token: str | None) -> UserSession | None:
    if not token:
        return None
    return s.execute(select(UserSession).where(UserSession.token == token)).scalar_one_or_none()


def authenticate(
    s: Session,
    email: str,
    password: str,
    *,
    previous_token: str | None = None,
    lifetime: timedelta = DEFAULT_LIFETIME,
) -> UserSession:
    """
    Check credentials and open a fresh session.

    Unknown email and wrong password raise the same InvalidCredentials. A
    return target captured on `previous_token` moves to the new session and the
    old record is dropped.
    """
    user = find_by_email(s, email)
    if user is None or not verify_secret(user.password_hash, password):
        record_event(s, actor=None, action="auth.login_failed", entity_type="User", metadata={"email": (email or "").strip().lower()})
        raise InvalidCredentials()

    return open_session(s, user, previous_token=previous_token, lifetime=lifetime)


def open_session(
    s: Session,
    user: User,
    *,
    previous_token: str | None = None,
    lifetime: timedelta = DEFAULT_LIFETIME,
) -> UserSession:
    return_to = None
    previous = _lookup(s, previous_token)
    if previous is not None:
        return_to = previous.return_to
        s.delete(previous)

    now = datetime.utcnow()
    us = UserSession(token=new_token(), user_id=user.id, return_to=return_to, created_at=now, expires_at=now + lifetime)
    s.add(us)
    s.flush()
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    return us


def resolve(s: Session, token: str | None, *, lifetime: timedelta = DEFAULT_LIFETIME) -> User | None:
    us = _lookup(s, token)
    if us is None:
        return None
    now = datetime.utcnow()
    if us.expires_at <= now:
        s.delete(us)
        s.flush()
        return None
    if us.user_id is None:
        return None
    us.expires_at = now + lifetime
    s.flush()
    return us.user


def destroy(s: Session, token: str | None) -> None:
    """Remove the session record. Safe to call repeatedly."""
    if not token:
        return
    s.execute(delete(UserSession).where(UserSession.token == token))


def capture_return_target(
    s: Session,
    token: str | None,
    path: str,
    *,
    lifetime: timedelta = DEFAULT_LIFETIME,
) -> str | None:
    """
    Remember where to send the caller after login. Returns the token that now
    holds the target (a new anonymous one if `token` was unknown), or the
    given token unchanged when `path` is not a local path.
    """
    if not is_local_path(path):
        return token
    now = datetime.utcnow()
    us = _lookup(s, token)
    if us is None or us.expires_at <= now:
        if us is not None:
            s.delete(us)
        us = UserSession(token=new_token(), user_id=None, created_at=now, expires_at=now + lifetime)
        s.add(us)
    us.return_to = path[:512]
    s.flush()
    return us.token


def consume_return_target(s: Session, token: str | None) -> str | None:
    """Read-once: returns the stored target and clears it."""
    us = _lookup(s, token)
    if us is None or not us.return_to:
        return None
    path = us.return_to
    us.return_to = None
    s.flush()
    return path


def purge_expired(s: Session) -> int:
    res = s.execute(delete(UserSession).where(UserSession.expires_at <= datetime.utcnow()))
    return res.rowcount or 0
