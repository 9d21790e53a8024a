"""
Data repair passes run at release time (see scripts/init_db.py).

Listings and reviews lose their owner when the owning user is deleted
(owner_id is ON DELETE SET NULL). Such records are handed to a system user so
every record has an owner again.
"""
from __future__ import annotations

import logging
import secrets

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.campsite.identity import find_by_email, register
from app.campsite.models import User

logger = logging.getLogger(__name__)

SYSTEM_EMAIL = "system@campsite.local"
SYSTEM_USERNAME = "system"


def ensure_system_user(s: Session, email: str = SYSTEM_EMAIL) -> User:
    """Return the system user, creating it with an unusable random password."""
    user = find_by_email(s, email)
    if user is not None:
        return user
    user = register(s, email, secrets.token_urlsafe(32), username=SYSTEM_USERNAME)
    logger.info("Created system user %s (id=%s)", user.email, user.id)
    return user


def assign_orphaned_records(s: Session, email: str = SYSTEM_EMAIL) -> dict[str, int]:
    """
    Give every owner-less listing and review to the system user.
    The system user is only created when there is something to repair.
    Returns counts per table.
    """
    from app.campsite.modules.listings.models import Listing
    from app.campsite.modules.reviews.models import Review

    orphan_listings = s.execute(select(Listing.id).where(Listing.owner_id.is_(None))).first() is not None
    orphan_reviews = s.execute(select(Review.id).where(Review.owner_id.is_(None))).first() is not None
    if not (orphan_listings or orphan_reviews):
        return {"listings": 0, "reviews": 0}

    system = ensure_system_user(s, email)
    listings = s.execute(update(Listing).where(Listing.owner_id.is_(None)).values(owner_id=system.id)).rowcount or 0
    reviews = s.execute(update(Review).where(Review.owner_id.is_(None)).values(owner_id=system.id)).rowcount or 0
    if listings or reviews:
        logger.warning("Assigned %s listings and %s reviews to system user %s", listings, reviews, system.email)
    return {"listings": listings, "reviews": reviews}
