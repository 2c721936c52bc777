import asyncio
import json
import uuid
from dataclasses import dataclass
from threading import Lock, RLock
from typing import Callable

from stock_ledger.core.observability import logger
from stock_ledger.schemas.change_feed import ChangeEvent

EventCallback = Callable[[ChangeEvent], None]


@dataclass(frozen=True)
class SubscriptionHandle:
    id: str


class ChangeFeed:
    """
    In-process hub for Item change notifications.

    Events reach each subscriber in publish order. Writers publish after their
    own commit and outside any shared lock, so publish order matches commit
    order only within one writer thread; two concurrent writers may publish in
    either order. Consumers order Updates by ``updatedAt`` and dedupe Inserts
    and Deletes by id. Delivery is at-least-once from the consumer's point of
    view: consumers reconnecting through the WebSocket bridge may miss events
    and must reload.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, EventCallback] = {}
        self._lock = Lock()
        self._publish_lock = RLock()

    def subscribe(self, on_event: EventCallback) -> SubscriptionHandle:
        handle = SubscriptionHandle(id=str(uuid.uuid4()))
        with self._lock:
            self._subscribers[handle.id] = on_event
        logger.info(json.dumps({"event": "feed.subscribed", "subscription_id": handle.id}))
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        with self._lock:
            removed = self._subscribers.pop(handle.id, None) is not None
        if removed:
            logger.info(json.dumps({"event": "feed.unsubscribed", "subscription_id": handle.id}))
        return removed

    def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to every subscriber. Returns the number reached."""
        delivered = 0
        with self._publish_lock:
            with self._lock:
                targets = list(self._subscribers.items())
            for subscription_id, callback in targets:
                try:
                    callback(event)
                except Exception as exc:
                    # A broken consumer must not block the writer or its peers.
                    with self._lock:
                        self._subscribers.pop(subscription_id, None)
                    logger.warning(
                        json.dumps(
                            {
                                "event": "feed.subscriber_dropped",
                                "subscription_id": subscription_id,
                                "error": str(exc),
                            }
                        )
                    )
                    continue
                delivered += 1
        return delivered

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()


class ChangeRelay:
    """
    Bounded hand-off from writer threads to one connection's event loop.

    When the consumer falls ``maxsize`` messages behind, ``overflowed`` is set
    and further events are dropped; the connection is then closed so the
    client reconnects and reloads instead of buffering without limit.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, *, maxsize: int):
        self.loop = loop
        self.queue: asyncio.Queue[dict] = asyncio.Queue(maxsize=maxsize)
        self.overflowed = asyncio.Event()

    def forward(self, event: ChangeEvent) -> None:
        # Called from writer threads.
        self.loop.call_soon_threadsafe(self._enqueue, event.to_message())

    def _enqueue(self, message: dict) -> None:
        if self.overflowed.is_set():
            return
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                json.dumps(
                    {
                        "event": "feed.relay_overflowed",
                        "maxsize": self.queue.maxsize,
                    }
                )
            )
            self.overflowed.set()
