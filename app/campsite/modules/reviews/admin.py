from __future__ import annotations

from flask import Blueprint, flash, g, redirect, request, url_for

from app.campsite.db import db_session
from app.campsite.errors import AuthorizationError, NotFoundError, ValidationError
from app.campsite.guards import LISTING_NOT_FOUND, NOT_PERMITTED, REVIEW_NOT_FOUND, require_login, require_review_owner
from app.campsite.modules.reviews.service import create_review, delete_review

bp = Blueprint("reviews", __name__)


def _review_payload() -> dict:
    payload = {}
    for name in ("rating", "body"):
        payload[name] = request.form.get(name, request.form.get(f"review[{name}]"))
    return payload


@bp.get("/listings/<int:listing_id>/reviews")
def reviews_index(listing_id: int):
    # Return targets captured on a review POST land here after login.
    return redirect(url_for("listings.listing_detail", listing_id=listing_id))


@bp.post("/listings/<int:listing_id>/reviews")
@require_login
def review_create(listing_id: int):
    s = db_session()
    try:
        create_review(s, listing_id, _review_payload(), g.current_user)
        s.commit()
    except ValidationError as e:
        s.rollback()
        for msg in e.errors:
            flash(msg, "error")
        return redirect(url_for("listings.listing_detail", listing_id=listing_id))
    except NotFoundError:
        s.rollback()
        flash(LISTING_NOT_FOUND, "error")
        return redirect(url_for("listings.listings_index"))

    flash("Created new review!", "success")
    return redirect(url_for("listings.listing_detail", listing_id=listing_id))


@bp.delete("/listings/<int:listing_id>/reviews/<int:review_id>")
@require_review_owner
def review_delete(listing_id: int, review_id: int):
    s = db_session()
    try:
        delete_review(s, review_id, listing_id, g.current_user)
        s.commit()
    except NotFoundError:
        s.rollback()
        flash(REVIEW_NOT_FOUND, "error")
        return redirect(url_for("listings.listing_detail", listing_id=listing_id))
    except AuthorizationError:
        s.rollback()
        flash(NOT_PERMITTED, "error")
        return redirect(url_for("listings.listing_detail", listing_id=listing_id))

    flash("Successfully deleted review.", "success")
    return redirect(url_for("listings.listing_detail", listing_id=listing_id))
