import logging
from typing import Any, Callable, Protocol

from pydantic import ValidationError as PydanticValidationError

from stock_ledger.client.view_cache import PaginatedWindow, ViewCache
from stock_ledger.core.constants import ItemCategory
from stock_ledger.schemas.change_feed import ChangeEvent

logger = logging.getLogger(__name__)

_UNCHANGED: Any = object()


class FeedSource(Protocol):
    def subscribe(self, on_event: Callable[[ChangeEvent], None]) -> Any: ...

    def unsubscribe(self, handle: Any) -> Any: ...


class CatalogView:
    """
    One on-screen catalog: a window key plus the feed subscription feeding it.

    The subscription lives exactly as long as the view is active. Use it as a
    context manager or call ``activate``/``deactivate`` from the view's mount
    and unmount hooks.
    """

    def __init__(
        self,
        cache: ViewCache,
        feed: FeedSource,
        *,
        page: int = 0,
        page_size: int = 10,
        category: ItemCategory | None = None,
    ):
        self.cache = cache
        self.feed = feed
        self.page = page
        self.page_size = page_size
        self.category = category
        self._handle: Any = None
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    @property
    def subscribed(self) -> bool:
        return self._handle is not None

    @property
    def window(self) -> PaginatedWindow | None:
        return self.cache.window()

    def __enter__(self) -> "CatalogView":
        self.activate()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.deactivate()

    def activate(self) -> PaginatedWindow:
        if self._active:
            return self.window
        self._subscribe()
        try:
            window = self.cache.load(self.page, self.page_size, self.category)
        except Exception:
            self._unsubscribe()
            raise
        self._active = True
        return window

    def deactivate(self) -> None:
        self._unsubscribe()
        self.cache.discard()
        self._active = False

    def navigate(
        self,
        *,
        page: int | None = None,
        page_size: int | None = None,
        category: ItemCategory | None = _UNCHANGED,
    ) -> PaginatedWindow:
        if page is not None:
            self.page = page
        if page_size is not None:
            self.page_size = page_size
        if category is not _UNCHANGED:
            self.category = category
        return self.reload()

    def reload(self) -> PaginatedWindow:
        if self._active and self._handle is None:
            # The feed dropped earlier; pick it up again before refetching.
            self._subscribe()
        return self.cache.load(self.page, self.page_size, self.category)

    def feed_lost(self) -> None:
        """The feed connection dropped. Not an error: the window just stops being exact."""
        logger.info("change feed lost; window is approximate until the next reload")
        self._unsubscribe()
        self.cache.mark_approximate()

    def handle_event(self, event: ChangeEvent | dict) -> None:
        if isinstance(event, dict):
            try:
                event = ChangeEvent.model_validate(event)
            except PydanticValidationError as exc:
                logger.warning("unreadable change feed message, window marked approximate: %s", exc)
                self.cache.mark_approximate()
                return
        self.cache.apply_change_event(event)

    def _subscribe(self) -> None:
        self._handle = self.feed.subscribe(self.handle_event)

    def _unsubscribe(self) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        self.feed.unsubscribe(handle)
