from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from stock_ledger.db.base import Base
from stock_ledger.models.item import utc_now


class StockMovement(Base):
    """
    One row per stock change. Positive = stock in. Negative = stock out.
    Rows outlive their item: no foreign key cascade, never updated or deleted.
    """
    __tablename__ = "stock_movements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    item_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    quantity_change: Mapped[int] = mapped_column(Integer, nullable=False)
    performed_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    performed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("quantity_change <> 0", name="ck_stock_movements_quantity_change_non_zero"),
        Index("ix_stock_movements_item_performed_at", "item_id", "performed_at"),
        Index("ix_stock_movements_performed_at", "performed_at"),
    )
