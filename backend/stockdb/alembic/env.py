# backend/stockdb/alembic/env.py

from __future__ import annotations

import os
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context

# backend/ must be importable when alembic is run from the repo root.
BACKEND_DIR = Path(__file__).resolve().parents[2]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

from stockdb.database import Base, write_engine  # noqa: E402
from stockdb.apps.inventory import models as inventory_models  # noqa: F401, E402
from stockdb.apps.sync import models as sync_models  # noqa: F401, E402

target_metadata = Base.metadata


def _offline_url() -> str:
    url = (config.get_main_option("sqlalchemy.url") or "").strip()
    if url.startswith("driver://"):
        url = ""
    url = url or os.getenv("DATABASE_WRITE_URL", "") or os.getenv("DATABASE_URL", "")
    if not url:
        raise RuntimeError("Offline migrations need DATABASE_WRITE_URL or DATABASE_URL.")
    return url


def run_migrations_offline() -> None:
    context.configure(
        url=_offline_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    # Same engine (and SQLite pragmas) the service writes through.
    with write_engine.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
