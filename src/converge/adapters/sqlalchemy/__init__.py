"""SQLAlchemy state backend for converge."""

from __future__ import annotations

from .mappings import create_all_tables, metadata, run_lock_table, state_record_table
from .store import SqlAlchemyStateStore, create_state_engine

__all__ = [
    "SqlAlchemyStateStore",
    "create_all_tables",
    "create_state_engine",
    "metadata",
    "run_lock_table",
    "state_record_table",
]
