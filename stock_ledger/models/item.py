from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from stock_ledger.db.base import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Item(Base):
    __tablename__ = "items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)  # ItemCategory value
    current_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    # Set in Python for sub-second resolution; the catalog is ordered by it.
    inserted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    __table_args__ = (
        CheckConstraint("current_stock >= 0", name="ck_items_current_stock_non_negative"),
        Index("ix_items_inserted_at", "inserted_at"),
        Index("ix_items_category_inserted_at", "category", "inserted_at"),
    )
