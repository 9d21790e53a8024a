from __future__ import annotations

import uuid
from datetime import timedelta

from flask import Blueprint, current_app, flash, g, redirect, request, session, url_for
from sqlalchemy.exc import SQLAlchemyError

from app.campsite.context import render_page
from app.campsite.db import db_session
from app.campsite.errors import AuthenticationError, ValidationError
from app.campsite.identity import register
from app.campsite.audit import record_event
from app.campsite.sessions import (
    authenticate,
    consume_return_target,
    destroy,
    is_local_path,
    open_session,
    resolve,
)

bp = Blueprint("auth", __name__)


def session_lifetime() -> timedelta:
    return timedelta(days=int(current_app.config.get("SESSION_LIFETIME_DAYS", 7)))


def load_current_user() -> None:
    """
    Resolves g.current_user from the session token in the cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(("/static/", "/assets/", "/health", "/healthz")):
        return

    token = session.get("sid")
    if not token:
        return

    try:
        s = db_session()
        user = resolve(s, token, lifetime=session_lifetime())
        s.commit()
    except SQLAlchemyError as e:
        current_app.logger.error("load_current_user DB error (request_id=%s): %s", g.request_id, e)
        db_session().rollback()
        return
    g.current_user = user


def _start_session(user_session) -> None:
    session.clear()
    session.permanent = True
    session["sid"] = user_session.token


def _after_login_redirect(token: str):
    s = db_session()
    nxt = consume_return_target(s, token)
    s.commit()
    if is_local_path(nxt):
        return redirect(nxt)
    return redirect(url_for("listings.listings_index"))


@bp.get("/register")
def register_get():
    return render_page("auth/register.html")


@bp.post("/register")
def register_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    username = (request.form.get("username") or "").strip() or None

    s = db_session()
    try:
        user = register(s, email, password, username=username)
        us = open_session(s, user, previous_token=session.get("sid"), lifetime=session_lifetime())
        s.commit()
    except ValidationError as e:
        s.rollback()
        for msg in e.errors:
            flash(msg, "error")
        return redirect(url_for("auth.register_get"))

    token = us.token
    _start_session(us)
    flash("Welcome! You are now registered.", "success")
    return _after_login_redirect(token)


@bp.get("/login")
def login_get():
    return render_page("auth/login.html")


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""

    s = db_session()
    try:
        us = authenticate(s, email, password, previous_token=session.get("sid"), lifetime=session_lifetime())
        s.commit()
    except AuthenticationError as e:
        # keep the failed-login audit event
        s.commit()
        flash(str(e), "error")
        return redirect(url_for("auth.login_get"))

    token = us.token
    _start_session(us)
    flash("Welcome back!", "success")
    return _after_login_redirect(token)


@bp.get("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    destroy(s, session.get("sid"))
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
    s.commit()
    session.clear()
    g.current_user = None
    flash("You have been logged out.", "success")
    return redirect(url_for("listings.listings_index"))
