from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from app.campsite.db import session_scope
from app.campsite.errors import InvalidCredentials
from app.campsite.models import AuditEvent, UserSession
from app.campsite.sessions import (
    authenticate,
    capture_return_target,
    consume_return_target,
    destroy,
    is_local_path,
    purge_expired,
    resolve,
)

from conftest import make_user, signed_in_client


def test_authenticate_and_resolve(app):
    user_id = make_user(app, "a@example.com")
    with session_scope(app) as s:
        us = authenticate(s, "a@example.com", "password")
        token = us.token
    assert len(token) >= 32

    with session_scope(app) as s:
        user = resolve(s, token)
        assert user is not None
        assert user.id == user_id


@pytest.mark.parametrize("email,password", [("a@example.com", "wrong"), ("nobody@example.com", "password")])
def test_authenticate_rejects_bad_credentials(app, email, password):
    make_user(app, "a@example.com")
    with session_scope(app) as s:
        with pytest.raises(InvalidCredentials):
            authenticate(s, email, password)
    with session_scope(app) as s:
        assert s.execute(select(UserSession)).first() is None
        actions = [e.action for e in s.execute(select(AuditEvent)).scalars()]
        assert "auth.login_failed" in actions


def test_resolve_unknown_or_empty_token(app):
    with session_scope(app) as s:
        assert resolve(s, None) is None
        assert resolve(s, "") is None
        assert resolve(s, "not-a-real-token") is None


def test_resolve_slides_expiry(app):
    make_user(app, "a@example.com")
    with session_scope(app) as s:
        us = authenticate(s, "a@example.com", "password", lifetime=timedelta(days=7))
        token = us.token
        us.expires_at = datetime.utcnow() + timedelta(minutes=5)

    with session_scope(app) as s:
        assert resolve(s, token, lifetime=timedelta(days=7)) is not None

    with session_scope(app) as s:
        us = s.execute(select(UserSession).where(UserSession.token == token)).scalar_one()
        assert us.expires_at > datetime.utcnow() + timedelta(days=6)


def test_expired_token_resolves_to_none_and_is_removed(app):
    make_user(app, "a@example.com")
    with session_scope(app) as s:
        us = authenticate(s, "a@example.com", "password")
        token = us.token
        us.expires_at = datetime.utcnow() - timedelta(seconds=1)

    with session_scope(app) as s:
        assert resolve(s, token) is None
    with session_scope(app) as s:
        assert s.execute(select(UserSession).where(UserSession.token == token)).first() is None


def test_destroy_is_idempotent(app):
    make_user(app, "a@example.com")
    with session_scope(app) as s:
        token = authenticate(s, "a@example.com", "password").token

    for _ in range(2):
        with session_scope(app) as s:
            destroy(s, token)
        with session_scope(app) as s:
            assert resolve(s, token) is None


def test_return_target_is_read_once_and_survives_login(app):
    make_user(app, "a@example.com")
    with session_scope(app) as s:
        anon = capture_return_target(s, None, "/listings/new")
    assert anon

    with session_scope(app) as s:
        us = authenticate(s, "a@example.com", "password", previous_token=anon)
        token = us.token
    assert token != anon

    with session_scope(app) as s:
        assert s.execute(select(UserSession).where(UserSession.token == anon)).first() is None
        assert consume_return_target(s, token) == "/listings/new"
    with session_scope(app) as s:
        assert consume_return_target(s, token) is None


@pytest.mark.parametrize("path,ok", [("/listings", True), ("//evil.example", False), ("https://evil.example", False), ("", False)])
def test_only_local_return_targets(path, ok):
    assert is_local_path(path) is ok


def test_purge_expired(app):
    with session_scope(app) as s:
        capture_return_target(s, None, "/a")
        old = capture_return_target(s, None, "/b")
        us = s.execute(select(UserSession).where(UserSession.token == old)).scalar_one()
        us.expires_at = datetime.utcnow() - timedelta(days=1)
    with session_scope(app) as s:
        assert purge_expired(s) == 1


def test_login_logout_http(app):
    make_user(app, "a@example.com")
    c = app.test_client()
    r = c.post("/login", data={"email": "a@example.com", "password": "nope"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/login")

    r = c.post("/login", data={"email": "a@example.com", "password": "password"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/listings")
    with c.session_transaction() as sess:
        token = sess["sid"]

    r = c.get("/listings")
    assert b"Signed in as a" in r.data

    r = c.get("/logout")
    assert r.status_code == 302
    with session_scope(app) as s:
        assert resolve(s, token) is None
    r = c.get("/logout")
    assert r.status_code == 302
    assert b"Signed in as" not in c.get("/listings").data


def test_cookie_carries_only_the_token(app):
    c = signed_in_client(app, "a@example.com")
    with c.session_transaction() as sess:
        assert "user_id" not in sess
        assert set(sess.keys()) <= {"sid", "_flashes", "_permanent", "csrf_token"}
