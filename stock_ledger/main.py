from sqlalchemy import text

from stock_ledger.core.errors import LedgerError
from stock_ledger.core.observability import (
    http_exception_handler,
    ledger_error_handler,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from stock_ledger.core.config import settings
from stock_ledger.db.session import engine
from stock_ledger.routers import items, movements
from stock_ledger.services.change_feed import ChangeFeed

app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Inventory stock ledger.\n\n"
        "Every stock change is recorded as a signed movement in the same transaction, "
        "so an item's stock always equals the sum of its movements. Clients keep their "
        "paginated catalog views current by subscribing to `/items/changes`."
    ),
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "items", "description": "Catalog items, stock updates and the change feed."},
        {"name": "movements", "description": "Append-only stock movement ledger."},
    ],
)

# One hub per application; views hold subscriptions on it, never the module.
app.state.change_feed = ChangeFeed()

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(LedgerError, ledger_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

cors_origins = settings.cors_origins or ["http://localhost:3000"]
allow_all_origins = "*" in cors_origins
env_value = settings.env.lower().strip()
allow_origin_regex = settings.cors_origin_regex

if (
    not allow_origin_regex
    and env_value in {"dev", "development", "staging", "stage"}
):
    # Helps local development where tooling uses dynamic localhost ports.
    allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all_origins else cors_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=not allow_all_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(items.router)
app.include_router(movements.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
        "changes": "/items/changes",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    return {"ok": True}
