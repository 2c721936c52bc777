import logging
from typing import Any

import requests

from stock_ledger.core.constants import ItemCategory
from stock_ledger.core.errors import ERRORS_BY_CODE, LedgerError
from stock_ledger.schemas.inventory import MovementOut
from stock_ledger.schemas.item import ItemCreate, ItemOut, ItemPageOut, LedgerCheckOut

logger = logging.getLogger(__name__)


class ApiError(LedgerError):
    """An error status the ledger taxonomy does not cover."""

    code = "http_error"

    def __init__(self, message: str, *, status_code: int, details: list[dict] | None = None):
        super().__init__(message, details=details)
        self.status_code = status_code


class TransportError(LedgerError):
    """The request never produced a response (connection refused, timeout, ...)."""

    code = "transport_error"


class CatalogApi:
    """
    Thin client for the stock ledger HTTP surface.

    Error envelopes are mapped back onto the server's exception classes, so a
    409 surfaces as ``ConcurrencyConflict`` and a 404 as ``NotFoundError``.
    ``session`` is anything with a ``requests.Session``-style ``request``
    method; the default is a fresh ``requests.Session``.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        session: Any = None,
        timeout_seconds: float = 15,
        actor_id: str | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else requests.Session()
        self.timeout_seconds = timeout_seconds
        self.actor_id = actor_id

    def list_items(
        self,
        *,
        page: int,
        page_size: int,
        category: ItemCategory | None = None,
    ) -> ItemPageOut:
        params: dict[str, Any] = {"page": page, "pageSize": page_size}
        if category is not None:
            params["category"] = ItemCategory(category).value
        return ItemPageOut.model_validate(self._request("GET", "/items", params=params))

    def get_item(self, item_id: str) -> ItemOut:
        return ItemOut.model_validate(self._request("GET", f"/items/{item_id}"))

    def create_item(self, payload: ItemCreate) -> ItemOut:
        body = payload.model_dump(mode="json", by_alias=True)
        return ItemOut.model_validate(self._request("POST", "/items", json=body))

    def update_stock(
        self,
        item_id: str,
        new_stock: int,
        *,
        expected_stock: int | None = None,
    ) -> ItemOut:
        body: dict[str, Any] = {"currentStock": new_stock}
        if expected_stock is not None:
            body["expectedStock"] = expected_stock
        return ItemOut.model_validate(self._request("PUT", f"/items/{item_id}", json=body))

    def update_details(self, item_id: str, fields: dict[str, Any]) -> ItemOut:
        body = {key: value for key, value in fields.items() if value is not None}
        if isinstance(body.get("category"), ItemCategory):
            body["category"] = body["category"].value
        return ItemOut.model_validate(self._request("PUT", f"/items/{item_id}", json=body))

    def delete_item(self, item_id: str) -> None:
        self._request("DELETE", f"/items/{item_id}")

    def list_movements(self, item_id: str | None = None) -> list[MovementOut]:
        params = {"itemId": item_id} if item_id else None
        rows = self._request("GET", "/movements", params=params)
        return [MovementOut.model_validate(row) for row in rows]

    def check_ledger(self, item_id: str) -> LedgerCheckOut:
        return LedgerCheckOut.model_validate(self._request("GET", f"/items/{item_id}/ledger"))

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        headers = {"X-Actor-Id": self.actor_id} if self.actor_id else None
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=json,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            error = _error_from_response(response)
            logger.debug("%s %s -> %s %s", method, path, response.status_code, error.code)
            raise error
        if response.status_code == 204:
            return None
        return response.json()


def _error_from_response(response: Any) -> LedgerError:
    try:
        body = response.json()
    except ValueError:
        body = None

    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        code = error.get("code")
        message = error.get("message") or f"HTTP {response.status_code}"
        details = error.get("details")
    else:
        code = None
        message = response.text or f"HTTP {response.status_code}"
        details = None

    error_cls = ERRORS_BY_CODE.get(code)
    if error_cls is None:
        return ApiError(message, status_code=response.status_code, details=details)
    return error_cls(message, details=details)
