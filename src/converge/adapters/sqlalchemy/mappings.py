"""Table metadata for the SQLite/SQLAlchemy state backend."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Final

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Dialect,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    TypeDecorator,
)

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

log = logging.getLogger(__name__)

LOCK_ROW_ID: Final[int] = 1

metadata = MetaData()


class UTCDateTime(TypeDecorator[datetime]):
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        _ = dialect
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        _ = dialect
        if value is None:
            return None
        return value if value.tzinfo else value.replace(tzinfo=UTC)


state_record_table = Table(
    "state_record",
    metadata,
    Column("state_id", String(512), primary_key=True),
    Column("resource_type", String(255), nullable=False),
    Column("name", String(255), nullable=False),
    Column("instance_key", String(255), nullable=True),
    Column("provider", String(255), nullable=False),
    Column("external_id", String(512), nullable=False),
    Column("attributes", Text, nullable=False),
    Column("outputs", Text, nullable=False),
    Column("dependencies", Text, nullable=False),
    Column("create_before_destroy", Boolean, nullable=False, default=False),
    Column("deposed", Boolean, nullable=False, default=False),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
)

run_lock_table = Table(
    "run_lock",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("owner", String(255), nullable=False),
    Column("acquired_at", UTCDateTime, nullable=False),
)


def create_all_tables(engine: Engine) -> None:
    """Create the state tables when they do not exist yet."""

    log.debug("Ensuring state tables exist on %s", engine.url)
    metadata.create_all(engine)
