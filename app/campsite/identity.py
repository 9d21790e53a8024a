from __future__ import annotations

import logging

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.campsite.audit import record_event
from app.campsite.errors import DuplicateHandle, NotFoundError, ValidationError
from app.campsite.models import User, UserSession
from app.campsite.passwords import hash_secret
from app.campsite.validation import Field, validate

logger = logging.getLogger(__name__)

USERNAME_MAX_LENGTH = 64

REGISTRATION_RULES = (
    Field("email", "Email", required=True, kind="email", max_length=320),
    Field("password", "Password", required=True, min_length=6, max_length=128),
    Field("username", "Username", max_length=USERNAME_MAX_LENGTH),
)


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def derive_username(email: str | None) -> str | None:
    """Local part of the email (before the first '@'), or None if there is none."""
    local = normalize_email(email).split("@", 1)[0].strip()
    if not local:
        return None
    return local[:USERNAME_MAX_LENGTH]


def validate_registration(payload: dict) -> list[str]:
    return validate(payload, REGISTRATION_RULES)


def find_by_email(s: Session, email: str | None) -> User | None:
    return s.execute(select(User).where(User.email == normalize_email(email))).scalar_one_or_none()


def username_taken(s: Session, username: str) -> bool:
    return s.execute(select(User.id).where(func.lower(User.username) == username.lower())).first() is not None


def _insert_user(s: Session, email: str, handle: str | None, password_hash: str) -> User:
    with s.begin_nested():
        user = User(email=email, username=handle, password_hash=password_hash)
        s.add(user)
        s.flush()
    return user


def register(s: Session, email: str, password: str, username: str | None = None) -> User:
    """
    Create a user. Raises DuplicateHandle if the email is already registered.

    The display handle is the supplied username or the email's local part. If
    that handle is already in use the user is created without one. The insert
    runs in a savepoint, so losing a race on either unique column leaves the
    caller's transaction intact.
    """
    email = normalize_email(email)
    errors = validate_registration({"email": email, "password": password, "username": username})
    if errors:
        raise ValidationError(errors)

    if find_by_email(s, email) is not None:
        raise DuplicateHandle(email)

    handle = (username or "").strip() or derive_username(email)
    if handle and username_taken(s, handle):
        logger.info("Display handle %r already taken; registering %s without one", handle, email)
        handle = None

    password_hash = hash_secret(password)
    try:
        user = _insert_user(s, email, handle, password_hash)
    except IntegrityError as e:
        if find_by_email(s, email) is not None:
            raise DuplicateHandle(email) from e
        if handle is None:
            raise
        logger.info("Display handle %r was taken concurrently; registering %s without one", handle, email)
        user = _insert_user(s, email, None, password_hash)

    record_event(s, actor=user, action="auth.register", entity_type="User", entity_id=str(user.id))
    return user


def reset_password(s: Session, email: str, new_password: str) -> User:
    """
    Replace a user's password. Existing sessions are ended so the old
    password's logins do not outlive it.
    """
    errors = validate({"email": normalize_email(email), "password": new_password}, REGISTRATION_RULES[:2])
    if errors:
        raise ValidationError(errors)

    user = find_by_email(s, email)
    if user is None:
        raise NotFoundError("User", normalize_email(email))

    user.password_hash = hash_secret(new_password)
    ended = s.execute(delete(UserSession).where(UserSession.user_id == user.id)).rowcount or 0
    s.flush()
    record_event(
        s,
        actor=None,
        action="auth.password_reset",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"sessions_ended": ended},
    )
    logger.info("Password reset for user %s; ended %s sessions", user.id, ended)
    return user


def list_users(s: Session) -> list[User]:
    return list(s.execute(select(User).order_by(User.id)).scalars().all())


def delete_user(s: Session, email: str) -> User:
    """
    Remove a user. Their listings and reviews stay behind without an owner
    until the ownership repair pass assigns them.
    """
    user = find_by_email(s, email)
    if user is None:
        raise NotFoundError("User", normalize_email(email))
    record_event(s, actor=None, action="auth.delete_user", entity_type="User", entity_id=str(user.id), metadata={"email": user.email})
    s.delete(user)
    s.flush()
    return user


def backfill_usernames(s: Session) -> int:
    """
    Repair pass for accounts created before display handles existed.
    Collisions are skipped, not disambiguated. Returns the number updated.
    """
    updated = 0
    rows = s.execute(select(User).where((User.username.is_(None)) | (User.username == "")).order_by(User.id)).scalars().all()
    for user in rows:
        handle = derive_username(user.email)
        if not handle or username_taken(s, handle):
            logger.warning("Cannot backfill username for user %s (handle %r unavailable)", user.id, handle)
            continue
        user.username = handle
        s.flush()
        updated += 1
    return updated
