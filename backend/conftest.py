from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from cryptography.fernet import Fernet

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT))

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DATABASE_WRITE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ.setdefault("CREDENTIALS_ENCRYPTION_KEY", Fernet.generate_key().decode("ascii"))
os.environ.setdefault("LOG_FORMAT", "plain")

from stockdb.database import Base, build_engine, build_session_factory  # noqa: E402
from stockdb.apps.inventory import models as inventory_models  # noqa: E402,F401
from stockdb.apps.sync import models as sync_models  # noqa: E402,F401


@pytest.fixture()
def db_session():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    TestingSession = build_session_factory(engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def session_factory(tmp_path):
    """File-backed database shared by several threads (one connection each)."""
    engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'stockdb-test.sqlite3'}")
    Base.metadata.create_all(bind=engine)
    try:
        yield build_session_factory(engine)
    finally:
        engine.dispose()
