import asyncio
from datetime import datetime

import pytest
from fastapi import WebSocketDisconnect, status
from pydantic import ValidationError as PydanticValidationError

from stock_ledger.core.constants import ChangeEventType
from stock_ledger.routers import items as items_router
from stock_ledger.schemas.change_feed import ChangeEvent
from stock_ledger.schemas.item import ItemIdentity, ItemOut
from stock_ledger.services.change_feed import ChangeFeed, ChangeRelay


def _item(item_id: str = "item-1", stock: int = 10) -> ItemOut:
    return ItemOut(
        id=item_id,
        name="Layer Mash",
        sku="FD-LM",
        category="feeds",
        current_stock=stock,
        inserted_at=datetime(2026, 10, 1, 9, 30),
    )


def test_publish_reaches_subscribers_in_order():
    feed = ChangeFeed()
    first, second = [], []
    feed.subscribe(first.append)
    feed.subscribe(second.append)

    events = [ChangeEvent.insert(_item()), ChangeEvent.update(_item(stock=11)), ChangeEvent.delete(_item())]
    for event in events:
        assert feed.publish(event) == 2

    assert first == events
    assert second == events


def test_unsubscribe_stops_delivery():
    feed = ChangeFeed()
    received = []
    handle = feed.subscribe(received.append)

    assert feed.unsubscribe(handle) is True
    assert feed.unsubscribe(handle) is False
    assert feed.publish(ChangeEvent.insert(_item())) == 0
    assert received == []
    assert feed.subscriber_count == 0


def test_failing_subscriber_is_dropped_without_blocking_others():
    feed = ChangeFeed()
    received = []

    def broken(event):
        raise RuntimeError("socket gone")

    feed.subscribe(broken)
    feed.subscribe(received.append)

    assert feed.publish(ChangeEvent.insert(_item())) == 1
    assert feed.subscriber_count == 1
    assert feed.publish(ChangeEvent.insert(_item("item-2"))) == 1
    assert [event.item_id for event in received] == ["item-1", "item-2"]


def test_change_event_wire_format():
    message = ChangeEvent.update(_item(stock=12), old=_item()).to_message()

    assert message["eventType"] == "Update"
    assert message["new"]["currentStock"] == 12
    assert message["old"]["currentStock"] == 10

    parsed = ChangeEvent.model_validate(message)
    assert parsed.event_type is ChangeEventType.UPDATE
    assert parsed.new == _item(stock=12)


def test_change_event_delete_may_carry_identity_only():
    parsed = ChangeEvent.model_validate({"eventType": "Delete", "old": {"id": "item-9"}})

    assert isinstance(parsed.old, ItemIdentity)
    assert parsed.item_id == "item-9"


def test_change_event_requires_matching_payload():
    with pytest.raises(PydanticValidationError):
        ChangeEvent.model_validate({"eventType": "Insert"})
    with pytest.raises(PydanticValidationError):
        ChangeEvent.model_validate({"eventType": "Delete", "new": {"id": "x"}})


def test_websocket_streams_committed_changes(test_context, change_feed):
    client, _ = test_context

    with client.websocket_connect("/items/changes") as ws:
        assert change_feed.subscriber_count == 1

        res = client.post(
            "/items",
            json={"name": "Wheat Flour", "sku": "FL-W-1", "category": "flour", "currentStock": 40},
        )
        assert res.status_code == 201, res.text
        item_id = res.json()["id"]

        res = client.put(f"/items/{item_id}", json={"currentStock": 25})
        assert res.status_code == 200, res.text

        res = client.delete(f"/items/{item_id}")
        assert res.status_code == 204, res.text

        inserted = ws.receive_json()
        updated = ws.receive_json()
        deleted = ws.receive_json()

    assert inserted["eventType"] == "Insert"
    assert inserted["new"]["id"] == item_id
    assert inserted["new"]["currentStock"] == 40

    assert updated["eventType"] == "Update"
    assert updated["old"]["currentStock"] == 40
    assert updated["new"]["currentStock"] == 25

    assert deleted["eventType"] == "Delete"
    assert deleted["old"]["id"] == item_id
    assert deleted["new"] is None

    assert change_feed.subscriber_count == 0


def test_failed_write_publishes_nothing(test_context, change_feed):
    client, _ = test_context
    received = []
    change_feed.subscribe(received.append)

    res = client.post(
        "/items",
        json={"name": "Bran", "sku": "FD-B", "category": "feeds", "currentStock": 5},
    )
    item_id = res.json()["id"]
    received.clear()

    res = client.put(f"/items/{item_id}", json={"currentStock": 9, "expectedStock": 4})
    assert res.status_code == 409, res.text
    res = client.put(f"/items/{item_id}", json={"currentStock": 5})
    assert res.status_code == 200, res.text

    assert received == []


def test_relay_stops_buffering_once_consumer_falls_behind():
    async def forward_faster_than_consumed() -> ChangeRelay:
        relay = ChangeRelay(asyncio.get_running_loop(), maxsize=2)
        for stock in (1, 2, 3, 4):
            relay.forward(ChangeEvent.insert(_item(f"item-{stock}", stock=stock)))
        await asyncio.sleep(0)
        return relay

    relay = asyncio.run(forward_faster_than_consumed())

    assert relay.overflowed.is_set()
    assert relay.queue.qsize() == 2
    assert relay.queue.get_nowait()["new"]["id"] == "item-1"
    assert relay.queue.get_nowait()["new"]["id"] == "item-2"


def test_websocket_closes_when_relay_overflows(test_context, change_feed, monkeypatch):
    client, _ = test_context

    class OverflowedRelay(ChangeRelay):
        def __init__(self, loop, *, maxsize):
            super().__init__(loop, maxsize=maxsize)
            self.overflowed.set()

    monkeypatch.setattr(items_router, "ChangeRelay", OverflowedRelay)

    with client.websocket_connect("/items/changes") as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()

    assert exc.value.code == status.WS_1013_TRY_AGAIN_LATER
    assert change_feed.subscriber_count == 0
