from datetime import datetime

from pydantic import ConfigDict

from stock_ledger.schemas.common import CamelModel


class MovementOut(CamelModel):
    id: str
    item_id: str
    quantity_change: int
    performed_by: str | None = None
    performed_at: datetime

    model_config = ConfigDict(from_attributes=True)
