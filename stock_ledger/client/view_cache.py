"""
Client-side cache of paginated catalog windows.

A window is a page of items plus the catalog total under its filter. It is
patched in place from two sources that may interleave in any order: the
result of the client's own mutations and Change Feed events (at-least-once,
possibly duplicated). Both go through the same merge primitives below, so
applying an Update twice, or an Update and the identical mutation result, is
idempotent.

Patches are cheap and only eventually exact:

* an Insert prepends on page 0 and drops the tail; later pages are not
  shifted, only counted, and are flagged ``approximate``;
* a Delete removes the row if present and always decrements the total; the
  vacated slot is never backfilled locally.

Exactness comes back only through ``load`` (explicit navigation or reload).
"""
import logging
from dataclasses import dataclass, field

from stock_ledger.client.api import CatalogApi
from stock_ledger.core.constants import LOW_STOCK_THRESHOLD, ChangeEventType, ItemCategory
from stock_ledger.core.errors import ValidationError
from stock_ledger.schemas.change_feed import ChangeEvent
from stock_ledger.schemas.item import ItemIdentity, ItemOut, ItemPageOut

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowKey:
    page: int
    page_size: int
    category: ItemCategory | None = None

    def admits(self, item: ItemOut | ItemIdentity) -> bool | None:
        """Whether ``item`` falls under this key's filter; None when unknowable."""
        if self.category is None:
            return True
        category = getattr(item, "category", None)
        if category is None:
            return None
        return category == self.category


@dataclass
class PaginatedWindow:
    key: WindowKey
    items: list[ItemOut]
    total_count: int
    approximate: bool = False
    # Ids already counted, so redelivered events do not count twice.
    inserted_ids: set[str] = field(default_factory=set, repr=False)
    deleted_ids: set[str] = field(default_factory=set, repr=False)

    @property
    def page(self) -> int:
        return self.key.page

    @property
    def page_size(self) -> int:
        return self.key.page_size

    @property
    def offset(self) -> int:
        return self.key.page * self.key.page_size

    def index_of(self, item_id: str) -> int | None:
        for index, item in enumerate(self.items):
            if item.id == item_id:
                return index
        return None

    def get(self, item_id: str) -> ItemOut | None:
        index = self.index_of(item_id)
        return None if index is None else self.items[index]


def is_low_stock(item: ItemOut, threshold: int = LOW_STOCK_THRESHOLD) -> bool:
    return item.current_stock < threshold


def _is_older(candidate: ItemOut, current: ItemOut) -> bool:
    if candidate.updated_at is None or current.updated_at is None:
        return False
    return candidate.updated_at < current.updated_at


def _remove_at(window: PaginatedWindow, index: int) -> None:
    del window.items[index]
    window.total_count = max(0, window.total_count - 1)
    if window.offset + len(window.items) < window.total_count:
        # Rows exist past the window that a reload would pull in.
        window.approximate = True


def apply_update(window: PaginatedWindow, item: ItemOut) -> bool:
    """Replace ``item`` in place when the window holds it. Returns True if changed."""
    index = window.index_of(item.id)
    if index is None:
        return False

    current = window.items[index]
    if _is_older(item, current):
        logger.debug("ignoring out-of-date state for item %s", item.id)
        return False
    if window.key.admits(item) is False:
        _remove_at(window, index)
        return True
    if current == item:
        return False
    window.items[index] = item
    return True


def apply_insert(window: PaginatedWindow, item: ItemOut) -> bool:
    if window.key.admits(item) is False:
        return False
    if item.id in window.deleted_ids:
        return False
    if item.id in window.inserted_ids or window.index_of(item.id) is not None:
        # Redelivery, or the row was already in the page we fetched.
        return apply_update(window, item)

    window.inserted_ids.add(item.id)
    window.total_count += 1
    if window.page == 0:
        window.items.insert(0, item)
        del window.items[window.page_size:]
    else:
        window.approximate = True
    return True


def apply_delete(window: PaginatedWindow, old: ItemOut | ItemIdentity) -> bool:
    if old.id in window.deleted_ids:
        return False

    index = window.index_of(old.id)
    if index is None and window.key.admits(old) is False:
        return False

    window.deleted_ids.add(old.id)
    if index is not None:
        _remove_at(window, index)
        return True

    window.total_count = max(0, window.total_count - 1)
    if window.page > 0:
        # The row may have sat on an earlier page, shifting this one.
        window.approximate = True
    return True


class ViewCache:
    """Holds the window for the active (page, page_size, category) key."""

    def __init__(self, api: CatalogApi):
        self.api = api
        self._windows: dict[WindowKey, PaginatedWindow] = {}
        self._active_key: WindowKey | None = None

    @property
    def active_key(self) -> WindowKey | None:
        return self._active_key

    def window(self, key: WindowKey | None = None) -> PaginatedWindow | None:
        key = key or self._active_key
        if key is None:
            return None
        return self._windows.get(key)

    def request(
        self,
        page: int,
        page_size: int,
        category: ItemCategory | None = None,
    ) -> WindowKey:
        """Make ``(page, page_size, category)`` the active key.

        Windows for any other key are dropped, and responses for them that
        arrive later are discarded by ``accept``.
        """
        if page < 0:
            raise ValidationError("page cannot be negative")
        if page_size < 1:
            raise ValidationError("pageSize must be at least 1")
        if category is not None:
            category = ItemCategory(category)
        key = WindowKey(page=page, page_size=page_size, category=category)
        self._active_key = key
        for stale_key in [k for k in self._windows if k != key]:
            del self._windows[stale_key]
        return key

    def accept(self, key: WindowKey, result: ItemPageOut) -> PaginatedWindow | None:
        if key != self._active_key:
            logger.debug("discarding response for superseded window %s", key)
            return None
        window = PaginatedWindow(
            key=key,
            items=list(result.data[: key.page_size]),
            total_count=result.count,
        )
        previous = self._windows.get(key)
        if previous is not None:
            # Feed echoes of changes the fresh page already reflects may still be in flight.
            window.inserted_ids = set(previous.inserted_ids)
            window.deleted_ids = set(previous.deleted_ids)
        self._windows[key] = window
        return window

    def load(
        self,
        page: int,
        page_size: int,
        category: ItemCategory | None = None,
    ) -> PaginatedWindow:
        key = self.request(page, page_size, category)
        result = self.api.list_items(page=key.page, page_size=key.page_size, category=key.category)
        window = self.accept(key, result)
        return window if window is not None else self.window()

    def discard(self, key: WindowKey | None = None) -> None:
        key = key or self._active_key
        if key is None:
            return
        self._windows.pop(key, None)
        if key == self._active_key:
            self._active_key = None

    def apply_mutation_result(self, updated: ItemOut) -> None:
        for window in self._windows.values():
            apply_update(window, updated)

    def apply_change_event(self, event: ChangeEvent) -> None:
        for window in self._windows.values():
            if event.event_type is ChangeEventType.INSERT:
                apply_insert(window, event.new)
            elif event.event_type is ChangeEventType.UPDATE:
                apply_update(window, event.new)
            else:
                apply_delete(window, event.old)

    def note_deleted(self, item_id: str) -> None:
        """Record a delete the windows already reflect, so its feed copy is not counted again."""
        for window in self._windows.values():
            window.deleted_ids.add(item_id)

    def mark_approximate(self) -> None:
        for window in self._windows.values():
            window.approximate = True

    def low_stock(self, key: WindowKey | None = None) -> list[ItemOut]:
        window = self.window(key)
        if window is None:
            return []
        return [item for item in window.items if is_low_stock(item)]
