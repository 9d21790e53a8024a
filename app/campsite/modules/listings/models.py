from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, DateTime, Float, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.campsite.models import Base

if TYPE_CHECKING:
    from app.campsite.models import User
    from app.campsite.modules.reviews.models import Review


class Listing(Base):
    __tablename__ = "listings"
    __table_args__ = (
        Index("idx_listings_owner_id", "owner_id"),
        CheckConstraint("price >= 0", name="ck_listings_price_nonnegative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))

    # Geocoded point; both set or both NULL
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Nullable only for legacy rows; create_listing always sets it.
    owner_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    owner: Mapped["User | None"] = relationship("User", lazy="joined")
    images: Mapped[list["ListingImage"]] = relationship(
        "ListingImage",
        back_populates="listing",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ListingImage.position",
        lazy="selectin",
    )
    reviews: Mapped[list["Review"]] = relationship(
        "Review",
        back_populates="listing",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Review.id",
        lazy="selectin",
    )

    @property
    def review_ids(self) -> list[int]:
        return [r.id for r in self.reviews]

    @property
    def geometry(self) -> dict | None:
        if self.longitude is None or self.latitude is None:
            return None
        return {"type": "Point", "coordinates": [self.longitude, self.latitude]}

    @property
    def average_rating(self) -> float | None:
        if not self.reviews:
            return None
        return sum(r.rating for r in self.reviews) / len(self.reviews)


class ListingImage(Base):
    """An uploaded image: public URL plus the handle the asset store deletes by."""

    __tablename__ = "listing_images"
    __table_args__ = (Index("idx_listing_images_listing_id", "listing_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    listing_id: Mapped[int] = mapped_column(ForeignKey("listings.id", ondelete="CASCADE"), nullable=False)
    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    storage_handle: Mapped[str] = mapped_column(String(512), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    listing: Mapped[Listing] = relationship("Listing", back_populates="images")
