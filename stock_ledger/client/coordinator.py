"""
Mutation Coordinator: turns user intents into ledger calls and view patches.

Every dialog (add, deduct, move, create, edit, delete) runs the same
two-step confirm flow:

    Editing -> Reviewing -> Submitting -> Settled
                                     \\-> Editing   (failure, input kept)

Nothing is patched locally before the server confirms, so failures need no
rollback. Stock commits carry the stock the delta was computed from
(``expectedStock``), and the server rejects a stale base with a conflict.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar

from pydantic import ValidationError as PydanticValidationError

from stock_ledger.client.api import CatalogApi
from stock_ledger.client.catalog_view import CatalogView
from stock_ledger.core.errors import LedgerError, ValidationError
from stock_ledger.schemas.change_feed import ChangeEvent
from stock_ledger.schemas.item import ItemCreate, ItemOut, ItemUpdate

logger = logging.getLogger(__name__)

P = TypeVar("P")
T = TypeVar("T")
R = TypeVar("R")


class DialogState(str, Enum):
    EDITING = "editing"
    REVIEWING = "reviewing"
    SUBMITTING = "submitting"
    SETTLED = "settled"


class DialogStateError(RuntimeError):
    pass


@dataclass(frozen=True)
class Notification:
    message: str
    severity: str = "success"  # success | info | warning | error


@dataclass(frozen=True)
class StockPlan:
    item_id: str
    item_name: str
    base_stock: int
    new_stock: int
    capped: bool = False

    @property
    def delta(self) -> int:
        return self.new_stock - self.base_stock


def _issues(exc: PydanticValidationError) -> list[dict]:
    return [
        {
            "field": ".".join(str(part) for part in err["loc"]) or "body",
            "message": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors()
    ]


def _require_int(value: Any, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{label} must be a whole number")
    return value


def plan_add(item: ItemOut, amount: Any) -> StockPlan:
    amount = _require_int(amount, "Amount")
    if amount <= 0:
        raise ValidationError("Amount to add must be greater than 0")
    return StockPlan(
        item_id=item.id,
        item_name=item.name,
        base_stock=item.current_stock,
        new_stock=item.current_stock + amount,
    )


def plan_deduct(item: ItemOut, amount: Any) -> StockPlan:
    """Plan removing ``amount`` units.

    Amounts above the current stock are accepted and clamped to 0 with
    ``capped`` set, instead of being refused: deducting 1200 from 1100 empties
    the item and records a -1100 movement.
    """
    amount = _require_int(amount, "Amount")
    if amount <= 0:
        raise ValidationError("Amount to deduct must be greater than 0")
    raw = item.current_stock - amount
    return StockPlan(
        item_id=item.id,
        item_name=item.name,
        base_stock=item.current_stock,
        new_stock=max(0, raw),
        capped=raw < 0,
    )


def plan_move(item: ItemOut, delta: Any) -> StockPlan:
    delta = _require_int(delta, "Quantity")
    if delta == 0:
        raise ValidationError("Quantity to add or remove cannot be 0")
    raw = item.current_stock + delta
    return StockPlan(
        item_id=item.id,
        item_name=item.name,
        base_stock=item.current_stock,
        new_stock=max(0, raw),
        capped=raw < 0,
    )


class MutationDialog(Generic[P, T, R]):
    """
    Confirm-before-commit state machine shared by every mutation dialog.

    ``plan`` validates the entered payload and computes what will be sent;
    ``commit`` performs it and returns the server's result. ``describe`` turns
    a (plan, result) pair into the success notification.
    """

    def __init__(
        self,
        *,
        plan: Callable[[P], T],
        commit: Callable[[T], R],
        notify: Callable[[Notification], None],
        describe: Callable[[T, R], Notification],
        payload: Optional[P] = None,
    ):
        self._plan = plan
        self._commit = commit
        self._notify = notify
        self._describe = describe
        self.state = DialogState.EDITING
        self.payload: Optional[P] = payload
        self.pending: Optional[T] = None
        self.result: Optional[R] = None
        self.error: Optional[LedgerError] = None

    @property
    def can_confirm(self) -> bool:
        return self.state is DialogState.REVIEWING

    def edit(self, payload: P) -> None:
        if self.state not in (DialogState.EDITING, DialogState.REVIEWING):
            raise DialogStateError(f"Cannot edit while {self.state.value}")
        self.payload = payload
        self.pending = None
        self.state = DialogState.EDITING

    def review(self) -> T:
        if self.state is not DialogState.EDITING:
            raise DialogStateError(f"Cannot review while {self.state.value}")
        if self.payload is None:
            raise ValidationError("Nothing entered yet")
        try:
            self.pending = self._plan(self.payload)
        except ValidationError as exc:
            self.error = exc
            raise
        self.error = None
        self.state = DialogState.REVIEWING
        return self.pending

    def back(self) -> None:
        if self.state is not DialogState.REVIEWING:
            raise DialogStateError(f"Cannot go back while {self.state.value}")
        self.pending = None
        self.state = DialogState.EDITING

    def confirm(self) -> Optional[R]:
        """Submit the reviewed plan. Returns the result, or None on failure."""
        if self.state is not DialogState.REVIEWING:
            raise DialogStateError(f"Cannot confirm while {self.state.value}")
        self.state = DialogState.SUBMITTING
        try:
            result = self._commit(self.pending)
        except LedgerError as exc:
            logger.info("mutation failed: %s", exc.message)
            self.state = DialogState.EDITING
            self.pending = None
            self.error = exc
            self._notify(Notification(exc.message, "error"))
            return None
        except Exception:
            self.state = DialogState.EDITING
            self.pending = None
            raise

        notification = self._describe(self.pending, result)
        self.state = DialogState.SETTLED
        self.result = result
        self.payload = None
        self.pending = None
        self.error = None
        self._notify(notification)
        return result


class MutationCoordinator:
    """Opens mutation dialogs bound to a catalog view."""

    def __init__(
        self,
        api: CatalogApi,
        view: CatalogView,
        *,
        notify: Callable[[Notification], None] | None = None,
    ):
        self.api = api
        self.view = view
        self.notifications: list[Notification] = []
        self._notify = notify or self.notifications.append

    def add_stock(self, item: ItemOut) -> MutationDialog[int, StockPlan, ItemOut]:
        return self._stock_dialog(item, plan_add)

    def deduct_stock(self, item: ItemOut) -> MutationDialog[int, StockPlan, ItemOut]:
        return self._stock_dialog(item, plan_deduct)

    def move_stock(self, item: ItemOut) -> MutationDialog[int, StockPlan, ItemOut]:
        return self._stock_dialog(item, plan_move)

    def create_item(self) -> MutationDialog[Any, ItemCreate, ItemOut]:
        return MutationDialog(
            plan=self._plan_create,
            commit=self._commit_create,
            notify=self._notify,
            describe=lambda _plan, created: Notification(f'Created "{created.name}"'),
        )

    def edit_details(self, item: ItemOut) -> MutationDialog[dict, dict, ItemOut]:
        def plan(fields: dict) -> dict:
            return self._plan_details(self._latest(item), fields)

        def commit(fields: dict) -> ItemOut:
            updated = self.api.update_details(item.id, fields)
            self.view.cache.apply_mutation_result(updated)
            return updated

        return MutationDialog(
            plan=plan,
            commit=commit,
            notify=self._notify,
            describe=lambda _plan, updated: Notification(f'Updated "{updated.name}"'),
        )

    def delete_item(self, item: ItemOut) -> MutationDialog[ItemOut, ItemOut, None]:
        def commit(target: ItemOut) -> None:
            self.api.delete_item(target.id)
            # The server knows which row fills the vacated slot; local state does not.
            try:
                self.view.reload()
            except LedgerError as exc:
                logger.info("reload after delete failed, window left approximate: %s", exc.message)
                self.view.cache.apply_change_event(ChangeEvent.delete(target))
                self.view.cache.mark_approximate()
            else:
                self.view.cache.note_deleted(target.id)

        return MutationDialog(
            plan=lambda target: target,
            commit=commit,
            notify=self._notify,
            describe=lambda target, _result: Notification(f'Deleted "{target.name}"', "info"),
            payload=item,
        )

    def _latest(self, item: ItemOut) -> ItemOut:
        window = self.view.window
        if window is None:
            return item
        return window.get(item.id) or item

    def _stock_dialog(
        self,
        item: ItemOut,
        planner: Callable[[ItemOut, Any], StockPlan],
    ) -> MutationDialog[int, StockPlan, ItemOut]:
        return MutationDialog(
            plan=lambda amount: planner(self._latest(item), amount),
            commit=self._commit_stock,
            notify=self._notify,
            describe=self._describe_stock,
        )

    def _commit_stock(self, plan: StockPlan) -> ItemOut:
        updated = self.api.update_stock(
            plan.item_id, plan.new_stock, expected_stock=plan.base_stock
        )
        self.view.cache.apply_mutation_result(updated)
        return updated

    @staticmethod
    def _describe_stock(plan: StockPlan, updated: ItemOut) -> Notification:
        if plan.capped:
            return Notification(f'Stock for "{updated.name}" capped at 0', "warning")
        return Notification(f'Stock updated for "{updated.name}"')

    @staticmethod
    def _plan_create(payload: Any) -> ItemCreate:
        if isinstance(payload, ItemCreate):
            return payload
        try:
            return ItemCreate.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError("Invalid item", details=_issues(exc)) from exc

    def _commit_create(self, payload: ItemCreate) -> ItemOut:
        created = self.api.create_item(payload)
        # Same primitive as the feed's Insert, so the feed's copy is a no-op.
        self.view.cache.apply_change_event(ChangeEvent.insert(created))
        return created

    @staticmethod
    def _plan_details(item: ItemOut, fields: dict) -> dict:
        try:
            update = ItemUpdate.model_validate(fields)
        except PydanticValidationError as exc:
            raise ValidationError("Invalid item details", details=_issues(exc)) from exc
        if update.current_stock is not None:
            raise ValidationError("Use a stock dialog to change stock")
        changes = {
            key: value
            for key, value in update.detail_fields().items()
            if getattr(item, key) != value
        }
        if not changes:
            raise ValidationError("Nothing to change")
        return changes
