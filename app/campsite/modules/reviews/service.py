from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from app.campsite.audit import record_event
from app.campsite.errors import AuthorizationError, NotFoundError, ValidationError
from app.campsite.validation import Field, coerce, validate

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.campsite.models import User
    from app.campsite.modules.reviews.models import Review

RATING_MIN = 1
RATING_MAX = 5

REVIEW_RULES = (
    Field("rating", "Rating", required=True, kind="int", min_value=RATING_MIN, max_value=RATING_MAX),
    Field("body", "Review text", required=True, max_length=5000),
)


def validate_review_payload(payload: dict) -> list[str]:
    return validate(payload, REVIEW_RULES)


def create_review(s: "Session", listing_id: int, payload: dict, owner: "User") -> "Review":
    """
    Validate, then add the review to the end of the listing's review sequence.
    Nothing is written when validation fails.
    """
    from app.campsite.modules.listings.models import Listing
    from app.campsite.modules.reviews.models import Review

    errors = validate_review_payload(payload)
    if errors:
        raise ValidationError(errors)

    listing = s.get(Listing, listing_id)
    if listing is None:
        raise NotFoundError("Listing", listing_id)

    review = Review(
        rating=coerce(payload.get("rating"), "int"),
        body=(payload.get("body") or "").strip(),
        owner_id=owner.id,
        created_at=datetime.utcnow(),
    )
    listing.reviews.append(review)
    s.flush()

    record_event(
        s,
        actor=owner,
        action="review.create",
        entity_type="Review",
        entity_id=str(review.id),
        metadata={"listing_id": listing_id, "rating": review.rating},
    )
    return review


def get_review(s: "Session", review_id: int) -> "Review | None":
    from app.campsite.modules.reviews.models import Review

    return s.get(Review, review_id)


def delete_review(s: "Session", review_id: int, listing_id: int, user: "User") -> None:
    """
    Remove a review and its entry in the parent listing's sequence together.

    The sequence is the reviews.listing_id foreign key, so a single row delete
    drops both directions at once.
    """
    review = get_review(s, review_id)
    if review is None or review.listing_id != listing_id:
        raise NotFoundError("Review", review_id)
    if review.owner_id is None or review.owner_id != user.id:
        raise AuthorizationError("Review", review_id)

    listing = review.listing
    if review in listing.reviews:
        listing.reviews.remove(review)
    s.delete(review)
    s.flush()

    record_event(
        s,
        actor=user,
        action="review.delete",
        entity_type="Review",
        entity_id=str(review_id),
        metadata={"listing_id": listing_id},
    )
