from collections.abc import Generator

from fastapi import Header, Request
from sqlalchemy.orm import Session

from stock_ledger.db.session import SessionLocal
from stock_ledger.services.change_feed import ChangeFeed


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_change_feed(request: Request) -> ChangeFeed:
    return request.app.state.change_feed


def get_actor_id(x_actor_id: str | None = Header(default=None)) -> str | None:
    if x_actor_id is None:
        return None
    cleaned = x_actor_id.strip()
    return cleaned or None
