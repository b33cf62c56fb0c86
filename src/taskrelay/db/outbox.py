"""Transactional outbox for change notifications.

OutboxConnection wraps a sqlite3 connection. Mutations made through it
produce change records that are:
- Dispatched immediately when no transaction is open
- Buffered while a transaction is open, flushed in order after the
  outermost commit, and discarded on rollback

Nested begin() calls collapse into the outermost transaction.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from taskrelay.events.channels import ChangeType

if TYPE_CHECKING:
    from taskrelay.events.emitter import EventEmitter

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Entity id used for aggregate records that describe many rows
BULK_ENTITY_ID = 0


@dataclass
class ChangeRecord:
    """A durable change awaiting dispatch."""

    entity: str
    entity_id: int
    change_type: ChangeType
    row_before: dict[str, Any] | None = None
    row_after: dict[str, Any] | None = None
    changed_columns: list[str] = field(default_factory=list)
    actor: int | None = None


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def _where_clause(where: Mapping[str, Any]) -> tuple[str, list[Any]]:
    if not where:
        raise ValueError("A WHERE condition is required")
    parts = [f"{_check_identifier(column)} = ?" for column in where]
    return " AND ".join(parts), list(where.values())


class OutboxConnection:
    """Connection wrapper that emits change events after commit.

    Args:
        conn: Underlying database connection.
        emitter: Emitter used for dispatch (defaults to the process-wide one).
        actor: User id attached to every change record.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        emitter: EventEmitter | None = None,
        actor: int | None = None,
    ) -> None:
        self.conn = conn
        self.actor = actor
        self._emitter = emitter
        self._depth = 0
        self._pending: list[ChangeRecord] = []

    @property
    def emitter(self) -> EventEmitter:
        if self._emitter is None:
            from taskrelay.events.emitter import get_event_emitter

            self._emitter = get_event_emitter()
        return self._emitter

    @property
    def depth(self) -> int:
        """Current transaction nesting depth (0 = no transaction)."""
        return self._depth

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @property
    def pending_count(self) -> int:
        """Number of buffered change records."""
        return len(self._pending)

    # Transactions

    def begin(self) -> None:
        """Open a transaction, or join the one already open."""
        if self._depth == 0:
            self.conn.execute("BEGIN IMMEDIATE")
            logger.debug("Outbox transaction started")
        self._depth += 1

    def commit(self) -> bool:
        """Commit the current level.

        At the outermost level the database commit happens first, then every
        buffered record is dispatched in order.

        Returns:
            False if no transaction was open.

        Raises:
            sqlite3.Error: If the database commit fails. Buffered records
                are discarded.
        """
        if self._depth <= 0:
            logger.warning("Commit called with no open transaction")
            return False

        self._depth -= 1
        if self._depth > 0:
            return True

        try:
            self.conn.commit()
        except sqlite3.Error:
            discarded = len(self._pending)
            self._pending.clear()
            logger.error(
                "Outbox commit failed, discarded %d pending event(s)", discarded
            )
            raise

        records, self._pending = self._pending, []
        self._flush(records)
        return True

    def rollback(self) -> bool:
        """Roll back the whole transaction and discard buffered records.

        Returns:
            False if no transaction was open.
        """
        if self._depth <= 0:
            logger.warning("Rollback called with no open transaction")
            return False

        discarded = len(self._pending)
        self._pending.clear()
        self._depth = 0
        self.conn.rollback()
        logger.debug(
            "Outbox transaction rolled back, discarded %d pending event(s)",
            discarded,
        )
        return True

    @contextmanager
    def transaction(self) -> Iterator[OutboxConnection]:
        """Run a block inside a (possibly nested) transaction.

        Example:
            with outbox.transaction():
                outbox.insert("jobs", {...})
                outbox.update("jobs", {"status": "paused"}, {"id": 3})
        """
        self.begin()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        self.commit()

    # Mutations

    def insert(
        self, table: str, data: Mapping[str, Any], entity: str | None = None
    ) -> int:
        """Insert a row and record a 'created' change.

        Returns:
            The new row id.
        """
        if not data:
            raise ValueError("insert requires at least one column")
        columns = ", ".join(_check_identifier(c) for c in data)
        placeholders = ", ".join("?" for _ in data)
        cursor = self.conn.execute(
            f"INSERT INTO {_check_identifier(table)} ({columns}) "
            f"VALUES ({placeholders})",
            list(data.values()),
        )
        row_id = int(cursor.lastrowid)

        self._record(
            ChangeRecord(
                entity=entity or table,
                entity_id=row_id,
                change_type=ChangeType.CREATED,
                row_after={**data, "id": row_id},
                changed_columns=list(data),
                actor=self.actor,
            )
        )
        return row_id

    def update(
        self,
        table: str,
        data: Mapping[str, Any],
        where: Mapping[str, Any],
        entity: str | None = None,
        changed_columns: list[str] | None = None,
    ) -> int:
        """Update rows and record an 'updated' change when any row changed.

        The before/after state is read from the first matching row.

        Returns:
            Number of rows updated.
        """
        if not data:
            raise ValueError("update requires at least one column")
        table = _check_identifier(table)
        where_sql, where_params = _where_clause(where)
        before = self._fetch_row(table, where_sql, where_params)

        assignments = ", ".join(f"{_check_identifier(c)} = ?" for c in data)
        cursor = self.conn.execute(
            f"UPDATE {table} SET {assignments} WHERE {where_sql}",
            [*data.values(), *where_params],
        )
        affected = cursor.rowcount
        if affected <= 0:
            self._finish_autocommit()
            return 0

        # Re-read with the new values so a WHERE on an updated column still matches
        after_where = {**where, **{k: v for k, v in data.items() if k in where}}
        after_sql, after_params = _where_clause(after_where)
        after = self._fetch_row(table, after_sql, after_params)

        if changed_columns is None:
            changed_columns = [
                column
                for column in data
                if before is None or before.get(column) != data[column]
            ]

        self._record(
            ChangeRecord(
                entity=entity or table,
                entity_id=self._entity_id(before or after, where),
                change_type=ChangeType.UPDATED,
                row_before=before,
                row_after=after,
                changed_columns=changed_columns,
                actor=self.actor,
            )
        )
        return affected

    def delete(
        self, table: str, where: Mapping[str, Any], entity: str | None = None
    ) -> int:
        """Delete rows and record a 'deleted' change when any row was removed.

        Returns:
            Number of rows deleted.
        """
        table = _check_identifier(table)
        where_sql, where_params = _where_clause(where)
        before = self._fetch_row(table, where_sql, where_params)

        cursor = self.conn.execute(
            f"DELETE FROM {table} WHERE {where_sql}", where_params
        )
        affected = cursor.rowcount
        if affected <= 0:
            self._finish_autocommit()
            return 0

        self._record(
            ChangeRecord(
                entity=entity or table,
                entity_id=self._entity_id(before, where),
                change_type=ChangeType.DELETED,
                row_before=before,
                actor=self.actor,
            )
        )
        return affected

    def bulk_operation(
        self,
        operation_type: str,
        operation: Callable[[sqlite3.Connection], int],
        entity: str = "bulk",
    ) -> int:
        """Run a multi-row mutation and record one aggregate change.

        Joins the caller's transaction when one is open; otherwise opens and
        commits its own.

        Args:
            operation_type: Label for the mutation (e.g. "purge").
            operation: Callable performing the writes, returning rows affected.
            entity: Entity name for the aggregate record.

        Returns:
            Rows affected.

        Raises:
            Exception: Whatever the operation raised. The transaction is rolled
                back only when this call opened it.
        """
        owns_transaction = not self.in_transaction
        self.begin()
        start = time.perf_counter()
        try:
            affected = int(operation(self.conn))
        except Exception:
            logger.exception("Bulk operation %s failed", operation_type)
            if owns_transaction:
                self.rollback()
            else:
                self._depth -= 1
            raise

        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        self._pending.append(
            ChangeRecord(
                entity=entity,
                entity_id=BULK_ENTITY_ID,
                change_type=ChangeType.BULK,
                row_after={
                    "operation_type": operation_type,
                    "affected_rows": affected,
                    "execution_time_ms": elapsed_ms,
                },
                changed_columns=["bulk_operation"],
                actor=self.actor,
            )
        )
        self.commit()
        return affected

    # Internals

    def _fetch_row(
        self, table: str, where_sql: str, params: list[Any]
    ) -> dict[str, Any] | None:
        cursor = self.conn.execute(
            f"SELECT * FROM {table} WHERE {where_sql} LIMIT 1", params
        )
        row = cursor.fetchone()
        if row is None:
            return None
        columns = [d[0] for d in cursor.description]
        return dict(zip(columns, row))

    @staticmethod
    def _entity_id(row: Mapping[str, Any] | None, where: Mapping[str, Any]) -> int:
        for source in (row or {}, where):
            value = source.get("id")
            if isinstance(value, int) and not isinstance(value, bool):
                return value
        return BULK_ENTITY_ID

    def _finish_autocommit(self) -> None:
        if not self.in_transaction:
            self.conn.commit()

    def _record(self, record: ChangeRecord) -> None:
        if self.in_transaction:
            self._pending.append(record)
            return
        self.conn.commit()
        self._flush([record])

    def _flush(self, records: list[ChangeRecord]) -> None:
        if not records:
            return
        succeeded = 0
        for record in records:
            if self._dispatch(record):
                succeeded += 1
        failed = len(records) - succeeded
        if failed:
            logger.warning(
                "Dispatched %d of %d change event(s), %d failed",
                succeeded,
                len(records),
                failed,
            )
        else:
            logger.debug("Dispatched %d change event(s)", succeeded)

    def _dispatch(self, record: ChangeRecord) -> bool:
        try:
            return self.emitter.emit(
                record.entity,
                record.entity_id,
                record.change_type,
                record.row_before,
                record.row_after,
                record.changed_columns,
                record.actor,
            )
        except Exception:
            logger.exception(
                "Change event dispatch failed for %s/%s (%s)",
                record.entity,
                record.entity_id,
                record.change_type.value,
            )
            return False
