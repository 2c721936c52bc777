"""
Ledger Writer: every change to an item's stock goes through here.

Each public operation is one unit of work on the session: the stock write and
the matching ``StockMovement`` row commit together or not at all, which keeps
``sum(quantity_change) == current_stock`` for every item. Stock writes are
compare-and-set against the value read in the same unit, so a writer that
computed its diff from a stale base fails with ``ConcurrencyConflict``
instead of silently overwriting a concurrent change.

Change Feed events are published only after commit.
"""
import json
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stock_ledger.core.constants import ItemCategory
from stock_ledger.core.errors import (
    ConcurrencyConflict,
    LedgerError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from stock_ledger.core.observability import logger
from stock_ledger.models.inventory import StockMovement
from stock_ledger.models.item import Item, utc_now
from stock_ledger.schemas.change_feed import ChangeEvent
from stock_ledger.schemas.item import ItemCreate, ItemOut, ItemUpdate
from stock_ledger.services.change_feed import ChangeFeed

DETAIL_FIELDS = ("name", "sku", "category")


@dataclass(frozen=True)
class LedgerCheck:
    item_id: str
    current_stock: int
    ledger_total: int
    movement_count: int

    @property
    def consistent(self) -> bool:
        return self.current_stock == self.ledger_total


@contextmanager
def _unit_of_work(db: Session, *, operation: str, item_id: str | None = None) -> Iterator[None]:
    try:
        yield
        db.commit()
    except LedgerError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(
            json.dumps(
                {
                    "event": "ledger.persistence_failed",
                    "operation": operation,
                    "item_id": item_id,
                    "error": str(exc),
                }
            )
        )
        raise PersistenceError(f"Could not {operation}; no changes were saved") from exc


def _publish(feed: ChangeFeed | None, event: ChangeEvent) -> None:
    if feed is not None:
        feed.publish(event)


def _validate_stock_value(value: Any, *, field: str = "currentStock") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value < 0:
        raise ValidationError(f"{field} cannot be negative")
    return value


def _validate_detail_fields(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = sorted(set(fields) - set(DETAIL_FIELDS))
    if unknown:
        raise ValidationError(f"Unsupported item fields: {', '.join(unknown)}")

    cleaned: dict[str, Any] = {}
    for key, value in fields.items():
        if value is None:
            continue
        if key == "category":
            try:
                cleaned[key] = ItemCategory(value).value
            except ValueError as exc:
                raise ValidationError(f"Unknown category: {value}") from exc
            continue
        text = str(value).strip()
        if not text:
            raise ValidationError(f"{key} cannot be blank")
        cleaned[key] = text
    return cleaned


def get_item(db: Session, item_id: str) -> Item:
    # populate_existing: never trust an identity-map copy for the stock base.
    item = db.execute(
        select(Item).where(Item.id == item_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not item:
        raise NotFoundError("Item not found")
    return item


def read_stock(db: Session, item_id: str) -> int:
    stock = db.execute(select(Item.current_stock).where(Item.id == item_id)).scalar_one_or_none()
    if stock is None:
        raise NotFoundError("Item not found")
    return int(stock)


def compare_and_set_stock(
    db: Session,
    *,
    item_id: str,
    expected_stock: int,
    new_stock: int,
    actor: str | None = None,
) -> bool:
    """Write ``new_stock`` only if the row still holds ``expected_stock``."""
    result = db.execute(
        update(Item)
        .where(Item.id == item_id, Item.current_stock == expected_stock)
        .values(current_stock=new_stock, updated_at=utc_now(), updated_by=actor)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def append_movement(
    db: Session,
    *,
    item_id: str,
    quantity_change: int,
    actor: str | None = None,
) -> StockMovement:
    if quantity_change == 0:
        raise ValueError("quantity_change cannot be zero")
    movement = StockMovement(
        id=str(uuid.uuid4()),
        item_id=item_id,
        quantity_change=quantity_change,
        performed_by=actor,
        performed_at=utc_now(),
    )
    db.add(movement)
    return movement


def _write_stock(
    db: Session,
    item: Item,
    *,
    new_stock: int,
    actor: str | None,
    expected_stock: int | None,
) -> int:
    old_stock = item.current_stock
    if expected_stock is not None and expected_stock != old_stock:
        logger.info(
            json.dumps(
                {
                    "event": "stock.conflict",
                    "item_id": item.id,
                    "expected_stock": expected_stock,
                    "actual_stock": old_stock,
                }
            )
        )
        raise ConcurrencyConflict(
            "Stock changed since it was read; re-read and retry",
            details=[{"field": "expectedStock", "message": f"current stock is {old_stock}", "type": "stale"}],
        )

    diff = new_stock - old_stock
    if diff == 0:
        return 0

    if not compare_and_set_stock(
        db, item_id=item.id, expected_stock=old_stock, new_stock=new_stock, actor=actor
    ):
        logger.info(
            json.dumps({"event": "stock.conflict", "item_id": item.id, "expected_stock": old_stock})
        )
        raise ConcurrencyConflict("Stock changed since it was read; re-read and retry")

    append_movement(db, item_id=item.id, quantity_change=diff, actor=actor)
    return diff


def _apply_changes(
    db: Session,
    *,
    item_id: str,
    details: dict[str, Any],
    new_stock: int | None,
    expected_stock: int | None,
    actor: str | None,
    feed: ChangeFeed | None,
) -> Item:
    diff = 0
    with _unit_of_work(db, operation="update item", item_id=item_id):
        item = get_item(db, item_id)
        before = ItemOut.model_validate(item)

        if new_stock is not None:
            diff = _write_stock(
                db, item, new_stock=new_stock, actor=actor, expected_stock=expected_stock
            )

        if details:
            for key, value in details.items():
                setattr(item, key, value)
            item.updated_at = utc_now()
            item.updated_by = actor

    db.refresh(item)
    after = ItemOut.model_validate(item)
    if new_stock is not None:
        logger.info(
            json.dumps(
                {
                    "event": "stock.updated",
                    "item_id": item_id,
                    "old_stock": before.current_stock,
                    "new_stock": after.current_stock,
                    "diff": diff,
                    "actor": actor,
                }
            )
        )
    if after != before:
        _publish(feed, ChangeEvent.update(after, old=before))
    return item


def update_stock(
    db: Session,
    *,
    item_id: str,
    new_stock: int,
    actor: str | None = None,
    expected_stock: int | None = None,
    feed: ChangeFeed | None = None,
) -> Item:
    """Set an item's stock to ``new_stock`` and append the signed difference.

    A zero difference writes nothing and appends no movement. Raises
    NotFoundError, ConcurrencyConflict (stale ``expected_stock`` or a lost
    compare-and-set) or PersistenceError; in every error case nothing is saved.
    """
    new_stock = _validate_stock_value(new_stock)
    if expected_stock is not None:
        expected_stock = _validate_stock_value(expected_stock, field="expectedStock")
    return _apply_changes(
        db,
        item_id=item_id,
        details={},
        new_stock=new_stock,
        expected_stock=expected_stock,
        actor=actor,
        feed=feed,
    )


def update_details(
    db: Session,
    *,
    item_id: str,
    fields: dict[str, Any],
    actor: str | None = None,
    feed: ChangeFeed | None = None,
) -> Item:
    """Update name/sku/category. Never touches stock or the ledger."""
    details = _validate_detail_fields(fields)
    if not details:
        raise ValidationError("No item details to update")
    return _apply_changes(
        db,
        item_id=item_id,
        details=details,
        new_stock=None,
        expected_stock=None,
        actor=actor,
        feed=feed,
    )


def apply_item_update(
    db: Session,
    *,
    item_id: str,
    payload: ItemUpdate,
    actor: str | None = None,
    feed: ChangeFeed | None = None,
) -> Item:
    """Apply a PUT payload; mixed detail and stock changes share one transaction."""
    details = _validate_detail_fields(payload.detail_fields())
    return _apply_changes(
        db,
        item_id=item_id,
        details=details,
        new_stock=payload.current_stock,
        expected_stock=payload.expected_stock,
        actor=actor,
        feed=feed,
    )


def create_item(
    db: Session,
    *,
    payload: ItemCreate,
    actor: str | None = None,
    feed: ChangeFeed | None = None,
) -> Item:
    """Insert an item together with its initiating movement.

    Movements are non-zero, so an item created with no stock starts with an
    empty ledger, which still sums to its stock.
    """
    item = Item(
        id=str(uuid.uuid4()),
        name=payload.name,
        sku=payload.sku,
        category=payload.category.value,
        current_stock=payload.current_stock,
        inserted_at=utc_now(),
        updated_by=actor,
    )
    with _unit_of_work(db, operation="create item", item_id=item.id):
        db.add(item)
        if item.current_stock:
            append_movement(db, item_id=item.id, quantity_change=item.current_stock, actor=actor)

    db.refresh(item)
    logger.info(
        json.dumps(
            {
                "event": "item.created",
                "item_id": item.id,
                "current_stock": item.current_stock,
                "actor": actor,
            }
        )
    )
    _publish(feed, ChangeEvent.insert(ItemOut.model_validate(item)))
    return item


def delete_item(
    db: Session,
    *,
    item_id: str,
    actor: str | None = None,
    feed: ChangeFeed | None = None,
) -> None:
    """Remove an item. Its movements stay behind as the audit record."""
    with _unit_of_work(db, operation="delete item", item_id=item_id):
        item = get_item(db, item_id)
        before = ItemOut.model_validate(item)
        db.delete(item)

    logger.info(json.dumps({"event": "item.deleted", "item_id": item_id, "actor": actor}))
    _publish(feed, ChangeEvent.delete(before))


def list_items(
    db: Session,
    *,
    page: int,
    page_size: int,
    category: ItemCategory | None = None,
) -> tuple[list[Item], int]:
    if page < 0:
        raise ValidationError("page cannot be negative")
    if page_size < 1:
        raise ValidationError("pageSize must be at least 1")

    count_stmt = select(func.count(Item.id))
    stmt = select(Item)
    if category is not None:
        count_stmt = count_stmt.where(Item.category == category.value)
        stmt = stmt.where(Item.category == category.value)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(Item.inserted_at.desc(), Item.id.desc())
        .offset(page * page_size)
        .limit(page_size)
    ).scalars().all()
    return list(rows), total


def list_movements(db: Session, *, item_id: str | None = None) -> list[StockMovement]:
    # Movements of deleted items are still returned.
    stmt = select(StockMovement)
    if item_id:
        stmt = stmt.where(StockMovement.item_id == item_id)
    rows = db.execute(
        stmt.order_by(StockMovement.performed_at.desc(), StockMovement.id.desc())
    ).scalars().all()
    return list(rows)


def get_ledger_total(db: Session, item_id: str) -> tuple[int, int]:
    total, count = db.execute(
        select(
            func.coalesce(func.sum(StockMovement.quantity_change), 0),
            func.count(StockMovement.id),
        ).where(StockMovement.item_id == item_id)
    ).one()
    return int(total), int(count)


def check_ledger(db: Session, item_id: str) -> LedgerCheck:
    current_stock = read_stock(db, item_id)
    ledger_total, movement_count = get_ledger_total(db, item_id)
    return LedgerCheck(
        item_id=item_id,
        current_stock=current_stock,
        ledger_total=ledger_total,
        movement_count=movement_count,
    )
