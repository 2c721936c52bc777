from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from stock_ledger.core.api_docs import error_responses
from stock_ledger.core.deps import get_db
from stock_ledger.schemas.inventory import MovementOut
from stock_ledger.services import ledger_service

router = APIRouter(prefix="/movements", tags=["movements"])


@router.get(
    "",
    response_model=list[MovementOut],
    summary="List stock movements, most recent first",
    responses={
        200: {
            "description": "Stock movements",
            "content": {
                "application/json": {
                    "example": [
                        {
                            "id": "movement-id",
                            "itemId": "item-id",
                            "quantityChange": -1100,
                            "performedBy": "user-id",
                            "performedAt": "2026-10-01T09:30:00Z",
                        }
                    ]
                }
            },
        },
        **error_responses(422, 500),
    },
)
def list_movements(
    item_id: str | None = Query(default=None, alias="itemId", description="Optional item filter"),
    db: Session = Depends(get_db),
):
    rows = ledger_service.list_movements(db, item_id=item_id)
    return [MovementOut.model_validate(row) for row in rows]
