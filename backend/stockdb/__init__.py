# backend/stockdb/__init__.py
"""
Import ORM models from each app so that:

- Alembic and Base.metadata.create_all() see all tables.
- Cross-app foreign keys (sync -> inventory) resolve at mapper setup.

The actual model classes are kept in stockdb/apps/*/models.py.
"""

from .apps.inventory import models as inventory_models  # items + append-only ledger
from .apps.sync import models as sync_models            # sources, runs, webhook inbox

__all__ = [
    "inventory_models",
    "sync_models",
]
