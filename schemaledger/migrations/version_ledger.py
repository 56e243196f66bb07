"""
Version ledger stored inside the target database.

The ledger table holds one row per migration unit with the state of its
most recent attempt; the history table is append-only and records every
attempt (apply, failure, rollback). Both tables are created lazily with
CREATE TABLE IF NOT EXISTS, so bootstrapping the ledger never needs a
migration of its own and is safe to repeat.

Ledger methods do not commit. They join the caller's transaction (or run
in their own when none is open) so the executor can record a unit in
the same transaction that applied it.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from schemaledger.errors import ConfigError, LedgerWriteConflict
from schemaledger.storage import ExecutionBackend

from .migration import HistoryRecord, LedgerStatus, VersionLedgerEntry

logger = logging.getLogger(__name__)

TABLE_NAME_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def _parse_ts(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class VersionLedger:
    """
    Persistent record of applied migration units.

    Attributes:
        backend: Execution backend for the target database
        table: Ledger table name
        history_table: Append-only attempt history table name

    Example:
        >>> ledger = VersionLedger(backend)
        >>> await ledger.ensure_tables()
        >>> await ledger.applied_identifiers()
        {'001', '002'}
    """

    def __init__(self, backend: ExecutionBackend,
                 table: str = 'schema_migrations',
                 clock: Callable[[], datetime] = utcnow):
        """
        Initialize ledger.

        Args:
            backend: Execution backend for the target database
            table: Ledger table name (optionally schema-qualified)
            clock: Returns the current time (UTC)

        Raises:
            ConfigError: If the table name is not a plain SQL identifier
        """
        if not TABLE_NAME_PATTERN.match(table):
            raise ConfigError(f"Invalid ledger table name: {table!r}")

        self.backend = backend
        self.table = table
        self.history_table = f'{table}_history'
        self.clock = clock

    async def ensure_tables(self) -> None:
        """
        Create the ledger and history tables if they don't exist.

        Safe to call multiple times.
        """
        ledger_sql = f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                identifier VARCHAR(255) NOT NULL PRIMARY KEY,
                description VARCHAR(255) NOT NULL,
                checksum VARCHAR(64) NOT NULL,
                applied_at VARCHAR(40) NOT NULL,
                applied_by VARCHAR(255) NOT NULL,
                duration_ms INTEGER NOT NULL,
                status VARCHAR(16) NOT NULL,
                error_message TEXT
            )
        """
        history_sql = f"""
            CREATE TABLE IF NOT EXISTS {self.history_table} (
                sequence INTEGER NOT NULL PRIMARY KEY,
                identifier VARCHAR(255) NOT NULL,
                checksum VARCHAR(64) NOT NULL,
                status VARCHAR(16) NOT NULL,
                recorded_at VARCHAR(40) NOT NULL,
                recorded_by VARCHAR(255) NOT NULL,
                duration_ms INTEGER NOT NULL,
                error_message TEXT
            )
        """

        for sql in (ledger_sql, history_sql):
            async with self.backend.transaction():
                await self.backend.execute(sql)

        logger.debug("Ensured ledger tables %s, %s exist",
                     self.table, self.history_table)

    async def exists(self) -> bool:
        """True when the ledger table has been created."""
        return await self.backend.table_exists(self.table)

    # ==================== Reads ====================

    async def entries(self) -> List[VersionLedgerEntry]:
        """Return every ledger entry ordered by applied_at."""
        async with self.backend.transaction():
            rows = await self.backend.fetch_all(
                f"SELECT identifier, description, checksum, applied_at, "
                f"applied_by, duration_ms, status, error_message "
                f"FROM {self.table} ORDER BY applied_at, identifier"
            )
        return [self._row_to_entry(row) for row in rows]

    async def applied_entries(self) -> List[VersionLedgerEntry]:
        """Return succeeded entries in order of application."""
        return [e for e in await self.entries() if e.succeeded]

    async def applied_identifiers(self) -> Set[str]:
        """Return the identifiers with status succeeded."""
        return {e.identifier for e in await self.applied_entries()}

    async def applied_checksums(self) -> Dict[str, str]:
        """Return {identifier: checksum} for succeeded entries."""
        return {e.identifier: e.checksum for e in await self.applied_entries()}

    async def get(self, identifier: str) -> Optional[VersionLedgerEntry]:
        async with self.backend.transaction():
            rows = await self.backend.fetch_all(
                f"SELECT identifier, description, checksum, applied_at, "
                f"applied_by, duration_ms, status, error_message "
                f"FROM {self.table} WHERE identifier = :identifier",
                {'identifier': identifier},
            )
        return self._row_to_entry(rows[0]) if rows else None

    async def history(self, identifier: Optional[str] = None) -> List[HistoryRecord]:
        """Return attempt history, oldest first."""
        sql = (
            f"SELECT sequence, identifier, checksum, status, recorded_at, "
            f"recorded_by, duration_ms, error_message FROM {self.history_table}"
        )
        params = {}
        if identifier is not None:
            sql += " WHERE identifier = :identifier"
            params['identifier'] = identifier
        sql += " ORDER BY sequence"

        async with self.backend.transaction():
            rows = await self.backend.fetch_all(sql, params)

        return [
            HistoryRecord(
                sequence=row['sequence'],
                identifier=row['identifier'],
                checksum=row['checksum'],
                status=LedgerStatus(row['status']),
                recorded_at=_parse_ts(row['recorded_at']),
                recorded_by=row['recorded_by'],
                duration_ms=row['duration_ms'],
                error_message=row['error_message'],
            )
            for row in rows
        ]

    # ==================== Writes ====================

    async def record(self, entry: VersionLedgerEntry) -> None:
        """
        Write an entry for a unit.

        Replaces a failed or rolled_back row for the same identifier; a
        succeeded row is never overwritten.

        Args:
            entry: Entry to write

        Raises:
            LedgerWriteConflict: If a succeeded entry already exists
        """
        params = {
            'identifier': entry.identifier,
            'description': entry.description,
            'checksum': entry.checksum,
            'applied_at': _format_ts(entry.applied_at),
            'applied_by': entry.applied_by,
            'duration_ms': entry.duration_ms,
            'status': entry.status.value,
            'error_message': entry.error_message,
            'succeeded': LedgerStatus.SUCCEEDED.value,
        }

        async with self.backend.transaction():
            # Write first so SQLite takes its write lock before any read
            updated = await self.backend.query(
                f"UPDATE {self.table} SET description = :description, "
                f"checksum = :checksum, applied_at = :applied_at, "
                f"applied_by = :applied_by, duration_ms = :duration_ms, "
                f"status = :status, error_message = :error_message "
                f"WHERE identifier = :identifier AND status <> :succeeded",
                params,
            )

            if updated == 0:
                if await self._exists(entry.identifier):
                    raise LedgerWriteConflict(
                        f"Migration {entry.identifier} is already recorded "
                        f"as succeeded",
                        identifier=entry.identifier,
                    )
                await self.backend.query(
                    f"INSERT INTO {self.table} (identifier, description, "
                    f"checksum, applied_at, applied_by, duration_ms, status, "
                    f"error_message) VALUES (:identifier, :description, "
                    f":checksum, :applied_at, :applied_by, :duration_ms, "
                    f":status, :error_message)",
                    params,
                )

            await self._append_history(
                entry.identifier, entry.checksum, entry.status,
                entry.applied_by, entry.duration_ms, entry.error_message,
            )

        logger.debug("Recorded %r", entry)

    async def mark_failed(self, identifier: str, error: str, *,
                          checksum: str, applied_by: str,
                          duration_ms: int = 0,
                          description: str = '') -> VersionLedgerEntry:
        """
        Record a failed attempt.

        A failed unit stays eligible for retry after an operator fix;
        nothing retries it automatically.

        Raises:
            LedgerWriteConflict: If the unit is already recorded as succeeded
        """
        entry = VersionLedgerEntry(
            identifier=identifier,
            checksum=checksum,
            applied_at=self.clock(),
            applied_by=applied_by,
            duration_ms=duration_ms,
            status=LedgerStatus.FAILED,
            description=description,
            error_message=error,
        )
        await self.record(entry)
        return entry

    async def mark_rolled_back(self, identifier: str, *, checksum: str,
                               applied_by: str, duration_ms: int = 0) -> None:
        """
        Record that a succeeded unit was reverted.

        Raises:
            LedgerWriteConflict: If the unit is not currently succeeded
        """
        async with self.backend.transaction():
            updated = await self.backend.query(
                f"UPDATE {self.table} SET status = :status, "
                f"applied_at = :applied_at, applied_by = :applied_by, "
                f"duration_ms = :duration_ms, error_message = NULL "
                f"WHERE identifier = :identifier AND status = :succeeded",
                {
                    'identifier': identifier,
                    'status': LedgerStatus.ROLLED_BACK.value,
                    'applied_at': _format_ts(self.clock()),
                    'applied_by': applied_by,
                    'duration_ms': duration_ms,
                    'succeeded': LedgerStatus.SUCCEEDED.value,
                },
            )
            if updated == 0:
                raise LedgerWriteConflict(
                    f"Migration {identifier} is not recorded as succeeded, "
                    f"cannot mark it rolled back",
                    identifier=identifier,
                )
            await self._append_history(
                identifier, checksum, LedgerStatus.ROLLED_BACK,
                applied_by, duration_ms, None,
            )

    async def record_rollback_failure(self, identifier: str, error: str, *,
                                      checksum: str, applied_by: str,
                                      duration_ms: int = 0) -> None:
        """Append a failed revert to history; the ledger row is unchanged."""
        async with self.backend.transaction():
            await self._append_history(
                identifier, checksum, LedgerStatus.ROLLBACK_FAILED,
                applied_by, duration_ms, error,
            )

    async def _exists(self, identifier: str) -> bool:
        rows = await self.backend.fetch_all(
            f"SELECT 1 AS present FROM {self.table} "
            f"WHERE identifier = :identifier",
            {'identifier': identifier},
        )
        return bool(rows)

    async def _append_history(self, identifier: str, checksum: str,
                              status: LedgerStatus, recorded_by: str,
                              duration_ms: int,
                              error_message: Optional[str]) -> None:
        await self.backend.query(
            f"INSERT INTO {self.history_table} (sequence, identifier, "
            f"checksum, status, recorded_at, recorded_by, duration_ms, "
            f"error_message) SELECT COALESCE(MAX(sequence), 0) + 1, "
            f":identifier, :checksum, :status, :recorded_at, :recorded_by, "
            f"CAST(:duration_ms AS INTEGER), :error_message "
            f"FROM {self.history_table}",
            {
                'identifier': identifier,
                'checksum': checksum,
                'status': status.value,
                'recorded_at': _format_ts(self.clock()),
                'recorded_by': recorded_by,
                'duration_ms': duration_ms,
                'error_message': error_message,
            },
        )

    @staticmethod
    def _row_to_entry(row) -> VersionLedgerEntry:
        return VersionLedgerEntry(
            identifier=row['identifier'],
            checksum=row['checksum'],
            applied_at=_parse_ts(row['applied_at']),
            applied_by=row['applied_by'],
            duration_ms=row['duration_ms'],
            status=LedgerStatus(row['status']),
            description=row['description'],
            error_message=row['error_message'],
        )
