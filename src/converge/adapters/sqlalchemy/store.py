"""State store backed by a SQLAlchemy database (SQLite by default)."""

from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from logging import getLogger
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, delete, insert, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from converge.domain.errors import (
    ConvergeError,
    StateCorruptError,
    StateLockError,
    StateStoreError,
)
from converge.domain.model import ResourceAddress, StateRecord
from converge.domain.ports import RunLock

from .mappings import LOCK_ROW_ID, create_all_tables, run_lock_table, state_record_table

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from sqlalchemy.engine import Engine

log = getLogger(__name__)


def create_state_engine(uri: str) -> Engine:
    """Build an engine for ``uri``; in-memory SQLite shares one connection."""

    if uri.startswith("sqlite") and (":memory:" in uri or uri.rstrip("/") == "sqlite:"):
        return create_engine(
            uri,
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_engine(uri, future=True)


class SqlAlchemyStateStore:
    """Persist state records and the run lock in two tables.

    Each ``save``/``remove`` commits its own transaction before returning.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        create_all_tables(engine)
        self._session_factory: sessionmaker[Session] = sessionmaker(
            bind=engine, expire_on_commit=False
        )

    @classmethod
    def from_uri(cls, uri: str) -> SqlAlchemyStateStore:
        return cls(create_state_engine(uri))

    def dispose(self) -> None:
        self.engine.dispose()

    def load(self) -> dict[str, StateRecord]:
        with self._session_factory() as session:
            try:
                rows = session.execute(select(state_record_table)).mappings().all()
            except SQLAlchemyError as exc:
                raise StateStoreError(f"Cannot read state: {exc}") from exc
        records = {row["state_id"]: _record_from_row(row) for row in rows}
        log.debug("Loaded %d state record(s)", len(records))
        return records

    def save(
        self, state_id: str, record: StateRecord, *, deposed: StateRecord | None = None
    ) -> None:
        rows = [(state_id, record)]
        if deposed is not None:
            rows.append((deposed.state_id, deposed))
        with self._transaction() as session:
            for row_id, row_record in rows:
                session.execute(
                    delete(state_record_table).where(state_record_table.c.state_id == row_id)
                )
                session.execute(insert(state_record_table).values(_row_for(row_id, row_record)))
        log.debug("Saved %s", ", ".join(row_id for row_id, _ in rows))

    def remove(self, state_id: str) -> None:
        with self._transaction() as session:
            session.execute(
                delete(state_record_table).where(state_record_table.c.state_id == state_id)
            )
        log.debug("Removed %s", state_id)

    @contextmanager
    def lock(self, owner: str) -> Iterator[RunLock]:
        run_lock = RunLock(token=uuid.uuid4().hex, owner=owner, acquired_at=datetime.now(UTC))
        try:
            with self._session_factory() as session, session.begin():
                session.execute(
                    insert(run_lock_table).values(
                        id=LOCK_ROW_ID,
                        token=run_lock.token,
                        owner=run_lock.owner,
                        acquired_at=run_lock.acquired_at,
                    )
                )
        except IntegrityError as exc:
            holder = self.current_lock()
            if holder is None:
                raise StateLockError("State is locked by another run") from exc
            raise StateLockError(
                f"State is locked by {holder.owner} since {holder.acquired_at:%Y-%m-%d %H:%M:%S}"
                f" (lock token {holder.token})",
                token=holder.token,
                owner=holder.owner,
            ) from exc
        except SQLAlchemyError as exc:
            raise StateStoreError(f"Cannot acquire state lock: {exc}") from exc
        log.debug("Acquired state lock %s for %s", run_lock.token, owner)
        try:
            yield run_lock
        finally:
            with self._transaction() as session:
                session.execute(
                    delete(run_lock_table).where(run_lock_table.c.token == run_lock.token)
                )
            log.debug("Released state lock %s", run_lock.token)

    def current_lock(self) -> RunLock | None:
        with self._session_factory() as session:
            row = (
                session.execute(select(run_lock_table).where(run_lock_table.c.id == LOCK_ROW_ID))
                .mappings()
                .first()
            )
        if row is None:
            return None
        return RunLock(token=row["token"], owner=row["owner"], acquired_at=row["acquired_at"])

    def force_unlock(self, token: str) -> None:
        with self._transaction() as session:
            result = session.execute(delete(run_lock_table).where(run_lock_table.c.token == token))
            if result.rowcount == 0:  # pyright: ignore[reportAttributeAccessIssue]
                raise StateLockError(f"No lock with token {token} is held", token=token)
        log.warning("Lock %s was released forcibly", token)

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            with session.begin():
                yield session
        except ConvergeError:
            raise
        except SQLAlchemyError as exc:
            raise StateStoreError(f"State write failed: {exc}") from exc
        finally:
            session.close()


def _row_for(state_id: str, record: StateRecord) -> dict[str, Any]:
    return {
        "state_id": state_id,
        "resource_type": record.address.resource_type,
        "name": record.address.name,
        "instance_key": record.address.key,
        "provider": record.provider,
        "external_id": record.external_id,
        "attributes": _encode(state_id, "attributes", record.attributes),
        "outputs": _encode(state_id, "outputs", record.outputs),
        "dependencies": json.dumps([str(address) for address in record.dependencies]),
        "create_before_destroy": record.create_before_destroy,
        "deposed": record.deposed,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def _encode(state_id: str, column: str, value: object) -> str:
    try:
        return json.dumps(value, sort_keys=True)
    except (TypeError, ValueError) as exc:
        raise StateStoreError(f"Cannot store {column} of {state_id}: {exc}") from exc


def _record_from_row(row: Mapping[str, Any]) -> StateRecord:
    state_id = row["state_id"]
    try:
        attributes = json.loads(row["attributes"])
        outputs = json.loads(row["outputs"])
        dependencies = json.loads(row["dependencies"])
    except (TypeError, json.JSONDecodeError) as exc:
        raise StateCorruptError(f"{state_id}: stored JSON cannot be decoded: {exc}") from exc
    if not isinstance(attributes, dict) or not isinstance(outputs, dict):
        raise StateCorruptError(f"{state_id}: attributes and outputs must be JSON objects")
    if not isinstance(dependencies, list):
        raise StateCorruptError(f"{state_id}: dependencies must be a JSON list")
    try:
        parsed_dependencies = tuple(ResourceAddress.parse(str(item)) for item in dependencies)
    except ConvergeError as exc:
        raise StateCorruptError(f"{state_id}: {exc}") from exc
    return StateRecord(
        address=ResourceAddress(row["resource_type"], row["name"], row["instance_key"]),
        provider=row["provider"],
        external_id=row["external_id"],
        attributes=attributes,
        outputs=outputs,
        dependencies=parsed_dependencies,
        create_before_destroy=bool(row["create_before_destroy"]),
        deposed=bool(row["deposed"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
