from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, request, url_for

from app.campsite.context import render_page
from app.campsite.db import db_session
from app.campsite.errors import AuthorizationError, NotFoundError, ValidationError
from app.campsite.geocoding import geocoder
from app.campsite.guards import NOT_PERMITTED, LISTING_NOT_FOUND, require_listing_owner, require_login
from app.campsite.models import User
from app.campsite.modules.listings.service import (
    create_listing,
    delete_listing,
    get_listing,
    list_listings,
    map_feed,
    store_uploads,
    update_listing,
)
from app.campsite.storage import StorageError, asset_store, release_assets

bp = Blueprint("listings", __name__)

LISTING_FIELDS = ("title", "location", "price", "description")


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _form_payload(*, partial: bool) -> dict:
    """
    Accepts both `title=...` and the nested `listing[title]=...` field names.
    With `partial`, fields missing from the form are left out entirely.
    """
    payload = {}
    for name in LISTING_FIELDS:
        for key in (name, f"listing[{name}]"):
            if key in request.form:
                payload[name] = request.form.get(key)
                break
        else:
            if not partial:
                payload[name] = None
    return payload


# ---------- List ----------
@bp.get("/listings")
def listings_index():
    s = db_session()
    return render_page("listings/index.html", listings=list_listings(s))


@bp.get("/listings.json")
def listings_feed():
    return jsonify(map_feed(db_session()))


# ---------- New ----------
@bp.get("/listings/new")
@require_login
def listings_new_get():
    return render_page("listings/new.html")


@bp.post("/listings")
@require_login
def listings_create():
    s = db_session()
    u = _current_user()
    payload = _form_payload(partial=False)

    store = asset_store()
    try:
        uploaded = store_uploads(request.files.getlist("image"), store)
    except ValidationError as e:
        for msg in e.errors:
            flash(msg, "error")
        return redirect(url_for("listings.listings_new_get"))
    except StorageError as e:
        flash("Image upload failed; please try again.", "error")
        current_app.logger.warning("Image upload failed (request_id=%s): %s", g.request_id, e)
        return redirect(url_for("listings.listings_new_get"))

    try:
        listing = create_listing(s, payload, u, images=uploaded, geocoder=geocoder())
        s.commit()
    except ValidationError as e:
        s.rollback()
        release_assets(store, [a.handle for a in uploaded])
        for msg in e.errors:
            flash(msg, "error")
        return redirect(url_for("listings.listings_new_get"))

    flash("Successfully created a new campground!", "success")
    return redirect(url_for("listings.listing_detail", listing_id=listing.id))


# ---------- Detail ----------
@bp.get("/listings/<int:listing_id>")
def listing_detail(listing_id: int):
    s = db_session()
    listing = get_listing(s, listing_id)
    if not listing:
        flash(LISTING_NOT_FOUND, "error")
        return redirect(url_for("listings.listings_index"))
    user = getattr(g, "current_user", None)
    return render_page(
        "listings/show.html",
        listing=listing,
        is_owner=bool(user and listing.owner_id == user.id),
    )


# ---------- Edit ----------
@bp.get("/listings/<int:listing_id>/edit")
@require_listing_owner
def listing_edit_get(listing_id: int):
    s = db_session()
    listing = get_listing(s, listing_id)
    if not listing:
        abort(404)
    return render_page("listings/edit.html", listing=listing)


@bp.put("/listings/<int:listing_id>")
@require_listing_owner
def listing_update(listing_id: int):
    s = db_session()
    u = _current_user()
    store = asset_store()
    payload = _form_payload(partial=True)

    try:
        uploaded = store_uploads(request.files.getlist("image"), store)
    except ValidationError as e:
        for msg in e.errors:
            flash(msg, "error")
        return redirect(url_for("listings.listing_edit_get", listing_id=listing_id))
    except StorageError as e:
        flash("Image upload failed; please try again.", "error")
        current_app.logger.warning("Image upload failed (request_id=%s): %s", g.request_id, e)
        return redirect(url_for("listings.listing_edit_get", listing_id=listing_id))

    try:
        _, released = update_listing(
            s,
            listing_id,
            payload,
            u,
            images=uploaded,
            delete_images=request.form.getlist("delete_images"),
            geocoder=geocoder(),
        )
        s.commit()
    except ValidationError as e:
        s.rollback()
        release_assets(store, [a.handle for a in uploaded])
        for msg in e.errors:
            flash(msg, "error")
        return redirect(url_for("listings.listing_edit_get", listing_id=listing_id))
    except NotFoundError:
        s.rollback()
        release_assets(store, [a.handle for a in uploaded])
        flash(LISTING_NOT_FOUND, "error")
        return redirect(url_for("listings.listings_index"))
    except AuthorizationError:
        s.rollback()
        release_assets(store, [a.handle for a in uploaded])
        flash(NOT_PERMITTED, "error")
        return redirect(url_for("listings.listing_detail", listing_id=listing_id))

    release_assets(store, released)
    flash("Successfully updated campground!", "success")
    return redirect(url_for("listings.listing_detail", listing_id=listing_id))


# ---------- Delete ----------
@bp.delete("/listings/<int:listing_id>")
@require_listing_owner
def listing_delete(listing_id: int):
    s = db_session()
    u = _current_user()
    try:
        delete_listing(s, listing_id, u, asset_store=asset_store())
    except NotFoundError:
        flash(LISTING_NOT_FOUND, "error")
        return redirect(url_for("listings.listings_index"))
    except AuthorizationError:
        flash(NOT_PERMITTED, "error")
        return redirect(url_for("listings.listing_detail", listing_id=listing_id))

    flash("Campground deleted.", "success")
    return redirect(url_for("listings.listings_index"))
