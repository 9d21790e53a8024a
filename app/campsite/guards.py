"""
Request guards: "is someone logged in" and "does the logged-in user own this".

The `check_*` functions are pure decisions; the decorators turn a decision
into a flash + redirect. Ownership failure is a normal outcome, not an error
page.
"""
from __future__ import annotations

import enum
from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import current_app, flash, g, redirect, request, session, url_for

from app.campsite.db import db_session
from app.campsite.models import User
from app.campsite.sessions import capture_return_target

NOT_SIGNED_IN = "You must be signed in to access that page."
NOT_PERMITTED = "You do not have permission to do that."
LISTING_NOT_FOUND = "Campground not found."
REVIEW_NOT_FOUND = "Review not found."


class GuardDecision(enum.Enum):
    OK = "ok"
    UNAUTHENTICATED = "unauthenticated"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"


def check_authenticated(user: User | None) -> bool:
    return user is not None


def _check_owner(entity: Any, user: User | None) -> GuardDecision:
    if not check_authenticated(user):
        return GuardDecision.UNAUTHENTICATED
    if entity is None:
        return GuardDecision.NOT_FOUND
    if entity.owner_id is None or entity.owner_id != user.id:
        return GuardDecision.FORBIDDEN
    return GuardDecision.OK


def check_listing_owner(listing: Any, user: User | None) -> GuardDecision:
    return _check_owner(listing, user)


def check_review_owner(review: Any, user: User | None, listing_id: int | None = None) -> GuardDecision:
    if review is not None and listing_id is not None and review.listing_id != listing_id:
        review = None
    return _check_owner(review, user)


def _requested_path() -> str:
    nxt = request.full_path or request.path
    # Avoid trailing '?' from full_path when there is no query string.
    if nxt.endswith("?"):
        nxt = nxt[:-1]
    return nxt


def redirect_to_login():
    """Remember the current path on the caller's session, then send them to login."""
    s = db_session()
    token = capture_return_target(s, session.get("sid"), _requested_path())
    s.commit()
    if token:
        session["sid"] = token
    flash(NOT_SIGNED_IN, "error")
    return redirect(url_for("auth.login_get"))


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        if not check_authenticated(getattr(g, "current_user", None)):
            return redirect_to_login()
        return fn(*args, **kwargs)

    return wrapped


def _deny(decision: GuardDecision, listing_id: int, *, not_found_message: str, not_found_url: str):
    if decision is GuardDecision.UNAUTHENTICATED:
        return redirect_to_login()
    user = getattr(g, "current_user", None)
    if decision is GuardDecision.NOT_FOUND:
        flash(not_found_message, "error")
        return redirect(not_found_url)
    current_app.logger.info(
        "Ownership check failed (user_id=%s path=%s request_id=%s)",
        user.id if user else None,
        request.path,
        getattr(g, "request_id", None),
    )
    flash(NOT_PERMITTED, "error")
    return redirect(url_for("listings.listing_detail", listing_id=listing_id))


def require_listing_owner(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Route must take `listing_id`."""

    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        from app.campsite.modules.listings.models import Listing

        listing_id = kwargs["listing_id"]
        user = getattr(g, "current_user", None)
        listing = db_session().get(Listing, listing_id) if user else None
        decision = check_listing_owner(listing, user)
        if decision is not GuardDecision.OK:
            return _deny(
                decision,
                listing_id,
                not_found_message=LISTING_NOT_FOUND,
                not_found_url=url_for("listings.listings_index"),
            )
        return fn(*args, **kwargs)

    return wrapped


def require_review_owner(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Route must take `listing_id` and `review_id`."""

    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        from app.campsite.modules.reviews.models import Review

        listing_id = kwargs["listing_id"]
        user = getattr(g, "current_user", None)
        review = db_session().get(Review, kwargs["review_id"]) if user else None
        decision = check_review_owner(review, user, listing_id)
        if decision is not GuardDecision.OK:
            return _deny(
                decision,
                listing_id,
                not_found_message=REVIEW_NOT_FOUND,
                not_found_url=url_for("listings.listings_index"),
            )
        return fn(*args, **kwargs)

    return wrapped
