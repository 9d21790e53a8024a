from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING

from markupsafe import escape
from sqlalchemy import delete, select

from app.campsite.audit import record_event
from app.campsite.errors import AuthorizationError, NotFoundError, ValidationError
from app.campsite.geocoding import Geocoder, safe_lookup
from app.campsite.storage import AssetStore, StoredAsset, build_asset_key, release_assets
from app.campsite.validation import Field, coerce, validate

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from werkzeug.datastructures import FileStorage
    from app.campsite.models import User
    from app.campsite.modules.listings.models import Listing

logger = logging.getLogger(__name__)

LISTING_RULES = (
    Field("title", "Title", required=True, max_length=200),
    Field("location", "Location", required=True, max_length=255),
    Field("price", "Price", required=True, kind="decimal", min_value=0, max_value=99999999),
    Field("description", "Description", max_length=10000),
)

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")


def validate_listing_payload(payload: dict, *, partial: bool = False) -> list[str]:
    return validate(payload, LISTING_RULES, partial=partial)


def store_uploads(files: Iterable["FileStorage"], store: AssetStore) -> list[StoredAsset]:
    """Push uploaded images to the asset store. Empty file inputs are ignored."""
    stored: list[StoredAsset] = []
    for f in files:
        if not f or not f.filename:
            continue
        content_type = (f.mimetype or "").lower()
        if content_type not in ALLOWED_IMAGE_TYPES:
            raise ValidationError(f"{f.filename}: only JPEG, PNG, GIF or WebP images are accepted.")
        data = f.read()
        if not data:
            continue
        stored.append(store.upload(build_asset_key(f.filename), data, content_type=content_type))
    return stored


def _attach_images(listing: "Listing", images: Iterable[StoredAsset]) -> None:
    from app.campsite.modules.listings.models import ListingImage

    position = max((img.position for img in listing.images), default=-1) + 1
    for asset in images:
        listing.images.append(ListingImage(url=asset.url, storage_handle=asset.handle, position=position))
        position += 1


def _apply_point(listing: "Listing", point: tuple[float, float] | None) -> None:
    if point is None:
        listing.longitude = None
        listing.latitude = None
    else:
        listing.longitude, listing.latitude = point


def create_listing(
    s: "Session",
    payload: dict,
    owner: "User",
    *,
    images: Iterable[StoredAsset] = (),
    geocoder: Geocoder | None = None,
) -> "Listing":
    """
    Create a listing owned by `owner`. Any owner in `payload` is ignored.
    """
    from app.campsite.modules.listings.models import Listing

    errors = validate_listing_payload(payload)
    if errors:
        raise ValidationError(errors)

    now = datetime.utcnow()
    listing = Listing(
        title=(payload.get("title") or "").strip(),
        description=(payload.get("description") or "").strip() or None,
        location=(payload.get("location") or "").strip(),
        price=coerce(payload.get("price"), "decimal"),
        owner_id=owner.id,
        created_at=now,
        updated_at=now,
    )
    _apply_point(listing, safe_lookup(geocoder, listing.location))
    _attach_images(listing, images)
    s.add(listing)
    s.flush()

    record_event(
        s,
        actor=owner,
        action="listing.create",
        entity_type="Listing",
        entity_id=str(listing.id),
        metadata={"title": listing.title, "images": len(listing.images)},
    )
    return listing


def get_listing(s: "Session", listing_id: int) -> "Listing | None":
    from app.campsite.modules.listings.models import Listing

    return s.get(Listing, listing_id)


def list_listings(s: "Session") -> list["Listing"]:
    from app.campsite.modules.listings.models import Listing

    return list(s.execute(select(Listing).order_by(Listing.created_at.desc(), Listing.id.desc())).scalars().all())


def _owned_listing(s: "Session", listing_id: int, user: "User") -> "Listing":
    listing = get_listing(s, listing_id)
    if listing is None:
        raise NotFoundError("Listing", listing_id)
    if listing.owner_id is None or listing.owner_id != user.id:
        raise AuthorizationError("Listing", listing_id)
    return listing


def update_listing(
    s: "Session",
    listing_id: int,
    payload: dict,
    user: "User",
    *,
    images: Iterable[StoredAsset] = (),
    delete_images: Iterable[str] = (),
    geocoder: Geocoder | None = None,
) -> tuple["Listing", list[str]]:
    """
    Apply field changes. Only keys present in `payload` are touched and the
    owner never changes. `delete_images` holds storage handles to detach.

    Returns the listing and the handles it let go of. The caller releases
    those from the asset store once the transaction has committed.
    """
    listing = _owned_listing(s, listing_id, user)

    errors = validate_listing_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)

    changes = {}
    if "title" in payload:
        new_title = (payload.get("title") or "").strip()
        if new_title != listing.title:
            changes["title"] = {"old": listing.title, "new": new_title}
            listing.title = new_title

    if "description" in payload:
        new_description = (payload.get("description") or "").strip() or None
        if new_description != listing.description:
            changes["description"] = True
            listing.description = new_description

    if "price" in payload:
        new_price = coerce(payload.get("price"), "decimal")
        if new_price != listing.price:
            changes["price"] = {"old": str(listing.price), "new": str(new_price)}
            listing.price = new_price

    if "location" in payload:
        new_location = (payload.get("location") or "").strip()
        if new_location != listing.location:
            changes["location"] = {"old": listing.location, "new": new_location}
            listing.location = new_location
            _apply_point(listing, safe_lookup(geocoder, new_location))

    released: list[str] = []
    doomed = set(delete_images)
    if doomed:
        for img in list(listing.images):
            if img.storage_handle in doomed:
                listing.images.remove(img)
                released.append(img.storage_handle)
        if released:
            changes["images_removed"] = len(released)

    new_images = list(images)
    if new_images:
        _attach_images(listing, new_images)
        changes["images_added"] = len(new_images)

    listing.updated_at = datetime.utcnow()
    s.flush()

    record_event(
        s,
        actor=user,
        action="listing.edit",
        entity_type="Listing",
        entity_id=str(listing.id),
        metadata={"changes": changes},
    )

    return listing, released


def delete_listing(s: "Session", listing_id: int, user: "User", *, asset_store: AssetStore) -> int:
    """
    Delete a listing with all of its reviews, then release its images.

    Reviews and the listing go in one transaction, reviews first. The listing
    delete is scoped to (id, owner) and must hit exactly one row, so of two
    concurrent deletes only one cascades. Asset release happens after commit
    and never fails the delete. Returns the number of asset delete calls.
    """
    from app.campsite.modules.listings.models import Listing, ListingImage
    from app.campsite.modules.reviews.models import Review

    listing = _owned_listing(s, listing_id, user)
    title = listing.title
    handles = list(
        s.execute(
            select(ListingImage.storage_handle).where(ListingImage.listing_id == listing_id).order_by(ListingImage.position)
        ).scalars()
    )

    try:
        review_count = s.execute(delete(Review).where(Review.listing_id == listing_id)).rowcount or 0
        s.execute(delete(ListingImage).where(ListingImage.listing_id == listing_id))
        res = s.execute(delete(Listing).where(Listing.id == listing_id, Listing.owner_id == user.id))
        if res.rowcount != 1:
            raise NotFoundError("Listing", listing_id)
        record_event(
            s,
            actor=user,
            action="listing.delete",
            entity_type="Listing",
            entity_id=str(listing_id),
            metadata={"title": title, "reviews": review_count, "images": len(handles)},
        )
        s.commit()
    except Exception:
        s.rollback()
        raise

    logger.info("Deleted listing %s (%s reviews); releasing %s assets", listing_id, review_count, len(handles))
    return release_assets(asset_store, handles)


def popup_text(listing: "Listing") -> str:
    """Short HTML caption for map markers; user text is escaped."""
    return f"<strong>{escape(listing.title)}</strong><br>{escape(listing.location)}"


def map_feed(s: "Session") -> list[dict]:
    return [
        {
            "id": listing.id,
            "title": listing.title,
            "location": listing.location,
            "geometry": listing.geometry,
            "popup_text": popup_text(listing),
        }
        for listing in list_listings(s)
    ]
