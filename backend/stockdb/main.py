# backend/stockdb/main.py
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .database import WriteSessionLocal
from .errors import StockError
from .logging_config import configure_logging

from .apps.inventory.router import router as inventory_router
from .apps.sync.router import router as sync_router

configure_logging()
logger = logging.getLogger(__name__)

ALEMBIC_DIR = Path(__file__).resolve().parent / "alembic"


def _schema_strict() -> bool:
    return os.getenv("SCHEMA_STRICT", "0").strip().lower() in {"1", "true", "yes", "on"}


def _enforce_schema_head_sync_if_configured() -> None:
    """
    With SCHEMA_STRICT enabled, refuse to serve against a database whose
    alembic revision is not the migration head.
    """
    if not _schema_strict():
        return
    cfg = Config()
    cfg.set_main_option("script_location", str(ALEMBIC_DIR))
    heads = set(ScriptDirectory.from_config(cfg).get_heads())

    db = WriteSessionLocal()
    try:
        rows = db.execute(text("SELECT version_num FROM alembic_version")).fetchall()
    finally:
        db.close()
    current = {row[0] for row in rows}
    if current != heads:
        raise RuntimeError(
            f"Database schema is at {sorted(current) or 'no revision'}, expected {sorted(heads)}. "
            "Run `alembic upgrade head` before starting the API."
        )
    logger.info("schema preflight passed", extra={"revisions": sorted(current)})


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _enforce_schema_head_sync_if_configured()
    yield


def _cors_origins() -> List[str]:
    """Back-office dashboards allowed to call the API from a browser (CORS_ALLOWED_ORIGINS)."""
    return [part.strip() for part in os.getenv("CORS_ALLOWED_ORIGINS", "").split(",") if part.strip()]


app = FastAPI(title="stockdb API", version="1.0.0", lifespan=lifespan)

# POS terminals and webhooks call server-to-server; browsers only when configured.
_origins = _cors_origins()
if _origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_origins,
        allow_credentials="*" not in _origins,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "Idempotency-Key"],
    )


@app.exception_handler(StockError)
async def stock_error_handler(request: Request, exc: StockError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code, "detail": exc.message, "details": exc.details},
    )


@app.get("/health", tags=["health"])
def health():
    return {"status": "ok"}


app.include_router(inventory_router)
app.include_router(sync_router)
