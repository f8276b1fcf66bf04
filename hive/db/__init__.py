"""Hive persistence layer.

Re-exports the connection helpers so callers can write:

    from hive.db import hive_db

    with hive_db(paths.db_path) as conn:
        ...
"""

from hive.db.client import (
    connect,
    flush,
    hive_db,
    is_busy_error,
    transaction,
)

__all__ = [
    "connect",
    "flush",
    "hive_db",
    "is_busy_error",
    "transaction",
]
