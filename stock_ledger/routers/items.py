import asyncio

from fastapi import APIRouter, Depends, Query, Response, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session

from stock_ledger.core.api_docs import error_responses
from stock_ledger.core.config import settings
from stock_ledger.core.constants import ItemCategory
from stock_ledger.core.deps import get_actor_id, get_change_feed, get_db
from stock_ledger.schemas.item import ItemCreate, ItemOut, ItemPageOut, ItemUpdate, LedgerCheckOut
from stock_ledger.services import ledger_service
from stock_ledger.services.change_feed import ChangeFeed, ChangeRelay

router = APIRouter(prefix="/items", tags=["items"])


@router.get(
    "",
    response_model=ItemPageOut,
    summary="List items, newest first",
    responses={
        200: {
            "description": "One page of the catalog plus the filtered total",
            "content": {
                "application/json": {
                    "example": {
                        "data": [
                            {
                                "id": "item-id",
                                "name": "Layer Mash 25kg",
                                "sku": "FD-LM-25",
                                "category": "feeds",
                                "currentStock": 850,
                                "insertedAt": "2026-10-01T09:30:00Z",
                                "updatedAt": None,
                                "updatedBy": None,
                            }
                        ],
                        "count": 37,
                    }
                }
            },
        },
        **error_responses(422, 500),
    },
)
def list_items(
    page: int = Query(default=0, ge=0, description="Zero-based page index"),
    page_size: int | None = Query(
        default=None,
        alias="pageSize",
        ge=1,
        le=settings.max_page_size,
        description="Page size; defaults to the configured default",
    ),
    category: ItemCategory | None = Query(default=None, description="Optional category filter"),
    db: Session = Depends(get_db),
):
    size = page_size or settings.default_page_size
    rows, total = ledger_service.list_items(db, page=page, page_size=size, category=category)
    return ItemPageOut(data=[ItemOut.model_validate(row) for row in rows], count=total)


@router.post(
    "",
    response_model=ItemOut,
    status_code=201,
    summary="Create item with its initiating stock movement",
    responses=error_responses(422, 500, 503),
)
def create_item(
    payload: ItemCreate,
    db: Session = Depends(get_db),
    actor_id: str | None = Depends(get_actor_id),
    feed: ChangeFeed = Depends(get_change_feed),
):
    item = ledger_service.create_item(db, payload=payload, actor=actor_id, feed=feed)
    return ItemOut.model_validate(item)


@router.websocket("/changes")
async def stream_item_changes(websocket: WebSocket):
    feed: ChangeFeed = websocket.app.state.change_feed
    relay = ChangeRelay(asyncio.get_running_loop(), maxsize=settings.change_feed_queue_size)

    async def pump() -> None:
        while True:
            await websocket.send_json(await relay.queue.get())

    async def watch() -> None:
        # Clients never send; this returns once the socket closes.
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    # Subscribe before accepting so nothing committed after the handshake is missed.
    handle = feed.subscribe(relay.forward)
    tasks: set[asyncio.Task] = set()
    try:
        await websocket.accept()
        watcher = asyncio.create_task(watch())
        tasks = {asyncio.create_task(pump()), watcher, asyncio.create_task(relay.overflowed.wait())}
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
        if relay.overflowed.is_set() and watcher not in done:
            # The client fell behind; it reconnects and reloads its window.
            await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
    finally:
        for task in tasks:
            task.cancel()
        feed.unsubscribe(handle)


@router.get(
    "/{item_id}",
    response_model=ItemOut,
    summary="Get item",
    responses=error_responses(404, 500),
)
def get_item(item_id: str, db: Session = Depends(get_db)):
    return ItemOut.model_validate(ledger_service.get_item(db, item_id))


@router.get(
    "/{item_id}/ledger",
    response_model=LedgerCheckOut,
    summary="Compare an item's stock with the sum of its movements",
    responses=error_responses(404, 500),
)
def check_item_ledger(item_id: str, db: Session = Depends(get_db)):
    check = ledger_service.check_ledger(db, item_id)
    return LedgerCheckOut(
        item_id=check.item_id,
        current_stock=check.current_stock,
        ledger_total=check.ledger_total,
        movement_count=check.movement_count,
        consistent=check.consistent,
    )


@router.put(
    "/{item_id}",
    response_model=ItemOut,
    summary="Update stock and/or item details",
    description=(
        "A `currentStock` field records the signed difference as a stock movement. "
        "Send `expectedStock` with the value the new stock was computed from to have a "
        "stale base rejected with 409. Detail fields never touch the ledger."
    ),
    responses=error_responses(404, 409, 422, 500, 503),
)
def update_item(
    item_id: str,
    payload: ItemUpdate,
    db: Session = Depends(get_db),
    actor_id: str | None = Depends(get_actor_id),
    feed: ChangeFeed = Depends(get_change_feed),
):
    item = ledger_service.apply_item_update(
        db, item_id=item_id, payload=payload, actor=actor_id, feed=feed
    )
    return ItemOut.model_validate(item)


@router.delete(
    "/{item_id}",
    status_code=204,
    summary="Delete item; its movements are kept",
    responses=error_responses(404, 500, 503),
)
def delete_item(
    item_id: str,
    db: Session = Depends(get_db),
    actor_id: str | None = Depends(get_actor_id),
    feed: ChangeFeed = Depends(get_change_feed),
):
    ledger_service.delete_item(db, item_id=item_id, actor=actor_id, feed=feed)
    return Response(status_code=204)
