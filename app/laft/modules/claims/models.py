from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.laft.models import Base

if TYPE_CHECKING:
    from app.laft.models import User
    from app.laft.modules.items.models import Item


class Claim(Base):
    __tablename__ = "claims"
    __table_args__ = (
        Index("idx_claims_item", "item_id"),
        Index("idx_claims_claimer", "claimer_id"),
        Index("idx_claims_status", "status"),
        CheckConstraint(
            "date_resolved IS NULL OR date_resolved >= date_claimed",
            name="ck_claims_resolved_after_claimed",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[int] = mapped_column(ForeignKey("items.id", ondelete="CASCADE"), nullable=False)
    claimer_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    claim_description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")  # pending, approved, rejected, retracted
    # Claimer prefers to hand over / collect through campus security.
    turn_in_to_security: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    date_claimed: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    date_resolved: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    resolved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    item: Mapped["Item"] = relationship("Item", back_populates="claims", lazy="selectin")
    claimer: Mapped["User"] = relationship("User", foreign_keys=[claimer_id], lazy="selectin")
    resolved_by: Mapped["User | None"] = relationship("User", foreign_keys=[resolved_by_user_id], lazy="selectin")
