import pytest

from stock_ledger.client.api import CatalogApi
from stock_ledger.client.catalog_view import CatalogView
from stock_ledger.client.coordinator import (
    DialogState,
    DialogStateError,
    MutationCoordinator,
    MutationDialog,
    Notification,
    plan_add,
    plan_deduct,
    plan_move,
)
from stock_ledger.client.view_cache import ViewCache
from stock_ledger.core.errors import ConcurrencyConflict, ValidationError
from stock_ledger.schemas.item import ItemOut


@pytest.fixture()
def catalog(test_context, change_feed):
    client, _ = test_context
    api = CatalogApi(session=client, actor_id="clerk-1")
    view = CatalogView(ViewCache(api), change_feed, page_size=10)
    view.activate()
    try:
        yield client, api, view, MutationCoordinator(api, view)
    finally:
        view.deactivate()


def _create(coordinator: MutationCoordinator, *, name: str = "Layer Mash", stock: int = 1000) -> ItemOut:
    dialog = coordinator.create_item()
    dialog.edit({"name": name, "sku": f"SKU-{name}", "category": "feeds", "currentStock": stock})
    dialog.review()
    created = dialog.confirm()
    assert created is not None, coordinator.notifications
    return created


def _item(stock: int) -> ItemOut:
    return ItemOut.model_validate(
        {
            "id": "item-1",
            "name": "Layer Mash",
            "sku": "FD-LM",
            "category": "feeds",
            "currentStock": stock,
            "insertedAt": "2026-10-01T09:30:00",
        }
    )


def test_plans_compute_new_stock():
    assert plan_add(_item(1000), 100).new_stock == 1100

    exact = plan_deduct(_item(1100), 1100)
    assert exact.new_stock == 0
    assert exact.capped is False

    move = plan_move(_item(10), -4)
    assert move.new_stock == 6
    assert move.capped is False

    for planner, amount in ((plan_add, 0), (plan_deduct, -3), (plan_move, 0), (plan_add, "5"), (plan_add, True)):
        with pytest.raises(ValidationError):
            planner(_item(10), amount)


def test_deduct_beyond_stock_is_clamped_not_refused():
    deduct = plan_deduct(_item(1100), 1200)

    assert deduct.new_stock == 0
    assert deduct.capped is True
    assert deduct.delta == -1100


def test_dialog_state_machine_transitions():
    notes: list[Notification] = []
    dialog = MutationDialog(
        plan=lambda value: value * 2,
        commit=lambda planned: planned + 1,
        notify=notes.append,
        describe=lambda planned, result: Notification(f"{planned}->{result}"),
    )

    with pytest.raises(DialogStateError):
        dialog.confirm()
    with pytest.raises(ValidationError):
        dialog.review()

    dialog.edit(3)
    assert dialog.review() == 6
    assert dialog.can_confirm
    dialog.back()
    assert dialog.state is DialogState.EDITING
    assert dialog.payload == 3

    dialog.review()
    assert dialog.confirm() == 7
    assert dialog.state is DialogState.SETTLED
    assert dialog.payload is None
    assert notes == [Notification("6->7")]

    with pytest.raises(DialogStateError):
        dialog.confirm()
    with pytest.raises(DialogStateError):
        dialog.edit(1)


def test_dialog_failure_returns_to_editing_with_payload():
    notes: list[Notification] = []

    def commit(planned):
        raise ConcurrencyConflict("Stock changed since it was read; re-read and retry")

    dialog = MutationDialog(
        plan=lambda value: value,
        commit=commit,
        notify=notes.append,
        describe=lambda planned, result: Notification("ok"),
        payload=5,
    )
    dialog.review()

    assert dialog.confirm() is None
    assert dialog.state is DialogState.EDITING
    assert dialog.payload == 5
    assert isinstance(dialog.error, ConcurrencyConflict)
    assert notes == [Notification("Stock changed since it was read; re-read and retry", "error")]


def test_dialog_rejects_confirm_while_submitting():
    attempts = []

    def commit(planned):
        with pytest.raises(DialogStateError):
            dialog.confirm()
        attempts.append(planned)
        return planned

    dialog = MutationDialog(
        plan=lambda value: value,
        commit=commit,
        notify=lambda note: None,
        describe=lambda planned, result: Notification("ok"),
        payload=4,
    )
    dialog.review()

    assert dialog.confirm() == 4
    assert attempts == [4]


def test_dialog_reraises_unexpected_errors_and_resets():
    def commit(planned):
        raise RuntimeError("boom")

    dialog = MutationDialog(
        plan=lambda value: value,
        commit=commit,
        notify=lambda note: None,
        describe=lambda planned, result: Notification("ok"),
        payload=1,
    )
    dialog.review()

    with pytest.raises(RuntimeError):
        dialog.confirm()
    assert dialog.state is DialogState.EDITING


def test_add_then_over_deduct_sequence(catalog):
    _, api, view, coordinator = catalog
    item = _create(coordinator, stock=1000)
    assert view.window.total_count == 1

    add = coordinator.add_stock(item)
    add.edit(100)
    assert add.review().new_stock == 1100
    assert add.confirm().current_stock == 1100
    assert view.window.get(item.id).current_stock == 1100

    deduct = coordinator.deduct_stock(item)
    deduct.edit(1200)
    plan = deduct.review()
    assert plan.base_stock == 1100
    assert plan.new_stock == 0
    deduct.confirm()

    assert view.window.get(item.id).current_stock == 0
    assert coordinator.notifications[-1] == Notification('Stock for "Layer Mash" capped at 0', "warning")

    movements = api.list_movements(item.id)
    assert sorted(m.quantity_change for m in movements) == [-1100, 100, 1000]
    assert all(m.performed_by == "clerk-1" for m in movements)
    assert api.check_ledger(item.id).consistent is True


def test_stale_base_is_rejected_then_retried(catalog):
    client, api, view, coordinator = catalog
    item = _create(coordinator, stock=1000)

    dialog = coordinator.add_stock(item)
    dialog.edit(100)
    dialog.review()

    # Another client moves the stock after the plan was reviewed.
    res = client.put(f"/items/{item.id}", json={"currentStock": 900})
    assert res.status_code == 200, res.text
    assert view.window.get(item.id).current_stock == 900

    assert dialog.confirm() is None
    assert dialog.state is DialogState.EDITING
    assert dialog.payload == 100
    assert coordinator.notifications[-1].severity == "error"
    assert api.get_item(item.id).current_stock == 900

    assert dialog.review().new_stock == 1000
    assert dialog.confirm().current_stock == 1000
    assert api.check_ledger(item.id).consistent is True


def test_create_is_counted_once_despite_feed_echo(catalog):
    _, _, view, coordinator = catalog

    first = _create(coordinator, name="Bran")
    second = _create(coordinator, name="Pollard")

    assert [row.id for row in view.window.items] == [second.id, first.id]
    assert view.window.total_count == 2


def test_create_validation_keeps_dialog_editing(catalog):
    _, _, _, coordinator = catalog
    dialog = coordinator.create_item()
    dialog.edit({"name": "", "sku": "X", "category": "grain"})

    with pytest.raises(ValidationError) as exc:
        dialog.review()

    assert dialog.state is DialogState.EDITING
    fields = {issue["field"] for issue in exc.value.details}
    assert {"name", "category"} <= fields


def test_edit_details(catalog):
    _, api, view, coordinator = catalog
    item = _create(coordinator, name="Maize")

    dialog = coordinator.edit_details(item)
    dialog.edit({"name": "Maize"})
    with pytest.raises(ValidationError):
        dialog.review()

    dialog.edit({"currentStock": 5})
    with pytest.raises(ValidationError):
        dialog.review()

    dialog.edit({"name": "Maize Meal", "category": "flour"})
    assert dialog.review() == {"name": "Maize Meal", "category": "flour"}
    updated = dialog.confirm()

    assert updated.name == "Maize Meal"
    assert view.window.get(item.id).category == "flour"
    assert api.check_ledger(item.id).movement_count == 1


def test_delete_reloads_window(test_context, change_feed):
    client, _ = test_context
    api = CatalogApi(session=client)
    view = CatalogView(ViewCache(api), change_feed, page_size=2)
    coordinator = MutationCoordinator(api, view)

    with view:
        created = [_create(coordinator, name=f"Item{index}", stock=10) for index in range(3)]
        visible = [row.id for row in view.window.items]
        assert visible == [created[2].id, created[1].id]

        dialog = coordinator.delete_item(created[2])
        dialog.review()
        dialog.confirm()

        window = view.window
        assert [row.id for row in window.items] == [created[1].id, created[0].id]
        assert window.total_count == 2
        assert window.approximate is False
        assert coordinator.notifications[-1] == Notification('Deleted "Item2"', "info")

    assert view.subscribed is False
    assert change_feed.subscriber_count == 0


class DelayedFeed:
    """Holds server events until ``flush``, like a WebSocket that lags behind HTTP responses."""

    def __init__(self, feed):
        self.feed = feed
        self.pending = []
        self._callbacks = {}

    def subscribe(self, on_event):
        handle = self.feed.subscribe(self.pending.append)
        self._callbacks[handle] = on_event
        return handle

    def unsubscribe(self, handle):
        self._callbacks.pop(handle, None)
        return self.feed.unsubscribe(handle)

    def flush(self):
        events, self.pending = self.pending, []
        for event in events:
            for callback in list(self._callbacks.values()):
                callback(event)


def test_late_delete_echo_after_reload_is_not_counted_twice(test_context, change_feed):
    client, _ = test_context
    api = CatalogApi(session=client)
    feed = DelayedFeed(change_feed)
    view = CatalogView(ViewCache(api), feed, page_size=2)
    coordinator = MutationCoordinator(api, view)

    with view:
        created = [_create(coordinator, name=f"Late{index}", stock=10) for index in range(3)]
        feed.flush()
        assert view.window.total_count == 3

        dialog = coordinator.delete_item(created[2])
        dialog.review()
        dialog.confirm()
        assert view.window.total_count == 2

        feed.flush()

        server_count = api.list_items(page=0, page_size=2).count
        assert server_count == 2
        assert view.window.total_count == server_count
        assert [row.id for row in view.window.items] == [created[1].id, created[0].id]


def test_late_insert_echo_after_reload_is_not_counted_twice(test_context, change_feed):
    client, _ = test_context
    api = CatalogApi(session=client)
    feed = DelayedFeed(change_feed)
    seed = MutationCoordinator(api, CatalogView(ViewCache(api), feed))
    for index in range(3):
        _create(seed, name=f"Seed{index}", stock=10)
    feed.pending.clear()

    view = CatalogView(ViewCache(api), feed, page=1, page_size=2)
    coordinator = MutationCoordinator(api, view)
    with view:
        _create(coordinator, name="Fresh", stock=10)
        assert view.window.total_count == 4

        view.reload()
        feed.flush()

        assert view.window.total_count == 4
        assert view.window.total_count == api.list_items(page=1, page_size=2).count


def test_feed_loss_marks_window_approximate_until_reload(catalog):
    _, _, view, coordinator = catalog
    _create(coordinator, name="Oats")

    view.feed_lost()
    assert view.subscribed is False
    assert view.window.approximate is True

    view.reload()
    assert view.subscribed is True
    assert view.window.approximate is False


def test_unreadable_feed_message_marks_window_approximate(catalog):
    _, _, view, _ = catalog

    view.handle_event({"eventType": "Teleport"})

    assert view.window.approximate is True


def test_navigate_switches_category(catalog):
    _, _, view, coordinator = catalog
    _create(coordinator, name="Bran")

    window = view.navigate(category="flour")
    assert window.total_count == 0

    window = view.navigate(category=None)
    assert window.total_count == 1
