"""Durable storage for schoolsync."""

from .durable import DurableStore
from .schema import ALLOWED_TABLES, SCHEMA_VERSION, validate_table_name
from .sqlite import SQLiteStore

__all__ = [
    "ALLOWED_TABLES",
    "DurableStore",
    "SCHEMA_VERSION",
    "SQLiteStore",
    "validate_table_name",
]
