from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.laft.models import Base

if TYPE_CHECKING:
    from app.laft.models import User
    from app.laft.modules.claims.models import Claim


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # e.g. "ids_cards"
    name: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "IDs & Cards"


class Item(Base):
    __tablename__ = "items"
    __table_args__ = (
        Index("idx_items_status", "status"),
        Index("idx_items_category", "category_id"),
        Index("idx_items_user", "user_id"),
        Index("idx_items_date_reported", "date_reported"),
        CheckConstraint("lat IS NULL OR (lat >= -90.0 AND lat <= 90.0)", name="ck_items_lat"),
        CheckConstraint("lng IS NULL OR (lng >= -180.0 AND lng <= 180.0)", name="ck_items_lng"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    title: Mapped[str] = mapped_column(String(150), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)
    location_description: Mapped[str] = mapped_column(String(255), nullable=False)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lng: Mapped[float | None] = mapped_column(Float, nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="lost")  # lost, found, claimed, archived
    date_reported: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    date_lost_or_found: Mapped[date] = mapped_column(Date, nullable=False)
    found_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    is_urgent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    # Relationships
    reporter: Mapped["User | None"] = relationship("User", foreign_keys=[user_id], lazy="selectin")
    category: Mapped[Category | None] = relationship("Category", lazy="selectin")
    images: Mapped[list["ItemImage"]] = relationship(
        "ItemImage",
        back_populates="item",
        cascade="all, delete-orphan",
        order_by="ItemImage.position",
        lazy="selectin",
    )
    claims: Mapped[list["Claim"]] = relationship(
        "Claim",
        back_populates="item",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def category_key(self) -> str | None:
        return self.category.key if self.category else None

    @property
    def category_name(self) -> str:
        return self.category.name if self.category else "Unknown"


class ItemImage(Base):
    __tablename__ = "item_images"
    __table_args__ = (Index("idx_item_images_item", "item_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[int] = mapped_column(ForeignKey("items.id", ondelete="CASCADE"), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    item: Mapped[Item] = relationship("Item", back_populates="images")
