import os
import sys
import uuid

from stock_ledger.client.api import CatalogApi
from stock_ledger.core.errors import LedgerError
from stock_ledger.schemas.item import ItemCreate

base_url = os.getenv("STOCK_LEDGER_BASE_URL", "http://localhost:8000").rstrip("/")
actor_id = os.getenv("STOCK_LEDGER_ACTOR_ID", "smoke-probe")


def main() -> int:
    api = CatalogApi(base_url, actor_id=actor_id)

    created = api.create_item(
        ItemCreate(
            name="Smoke Probe Feed",
            sku=f"SMOKE-{uuid.uuid4().hex[:6]}",
            category="feeds",
            current_stock=10,
        )
    )
    try:
        updated = api.update_stock(created.id, 25, expected_stock=created.current_stock)
        check = api.check_ledger(created.id)
        page = api.list_items(page=0, page_size=5)
    finally:
        api.delete_item(created.id)

    print(f"Stock after update: {updated.current_stock}")
    print(f"Ledger consistent: {check.consistent} ({check.movement_count} movements)")
    print(f"Catalog total: {page.count}")
    return 0 if check.consistent else 2


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except LedgerError as exc:
        print(f"Stock ledger probe failed: {exc.message}", file=sys.stderr)
        raise SystemExit(1)
