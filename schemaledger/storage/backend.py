"""
Abstract execution backend.

This module defines the ExecutionBackend abstract base class, the narrow
interface through which the migration engine talks to the relational
engine. The engine never assumes DDL is transactional: backends declare
it through the supports_transactional_ddl capability flag.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from schemaledger.errors import ExecutionError


class ExecutionBackend(ABC):
    """
    Abstract interface to the target database.

    All methods are async. A backend holds exactly one connection, so
    calls made through it are naturally serialized.

    Attributes:
        logger: Logger instance for backend events
        dialect: Dialect name ('sqlite', 'postgresql', ...)
        supports_transactional_ddl: Whether DDL statements can be rolled
            back as part of a transaction

    Example:
        >>> backend = SQLAlchemyBackend('sqlite+aiosqlite:///app.db')
        >>> await backend.connect()
        >>> async with backend.transaction():
        ...     await backend.execute('CREATE TABLE t (id INTEGER)')
        >>> await backend.close()
    """

    dialect: str = 'unknown'

    def __init__(self, logger: Optional[logging.Logger] = None):
        """
        Initialize backend.

        Args:
            logger: Optional logger instance. If None, creates default logger.
        """
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._is_connected = False

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    @abstractmethod
    def supports_transactional_ddl(self) -> bool:
        """Capability flag: can DDL be rolled back?"""

    @abstractmethod
    async def connect(self) -> None:
        """
        Open the connection.

        Raises:
            ExecutionError: If the connection cannot be established
        """

    @abstractmethod
    async def close(self) -> None:
        """
        Close the connection, rolling back any open transaction.

        Should not raise exceptions (best effort cleanup).
        """

    @abstractmethod
    async def execute(self, statement: str) -> int:
        """
        Execute one raw script statement (no parameter binding).

        Returns:
            Affected row count (-1 if the driver does not report one)

        Raises:
            ExecutionError: On any database failure
        """

    @abstractmethod
    async def query(self, statement: str,
                    params: Optional[Mapping[str, Any]] = None) -> int:
        """
        Execute a statement with named (:name) bind parameters.

        Returns:
            Affected row count

        Raises:
            ExecutionError: On any database failure
        """

    @abstractmethod
    async def fetch_all(self, statement: str,
                        params: Optional[Mapping[str, Any]] = None
                        ) -> List[Dict[str, Any]]:
        """
        Run a query with named bind parameters and return rows as dicts.

        Raises:
            ExecutionError: On any database failure
        """

    @abstractmethod
    async def begin(self) -> None:
        """Begin a transaction."""

    @abstractmethod
    async def commit(self) -> None:
        """Commit the current transaction (no-op when none is open)."""

    @abstractmethod
    async def rollback(self) -> None:
        """Roll back the current transaction (no-op when none is open)."""

    @abstractmethod
    def in_transaction(self) -> bool:
        """Return True while a transaction is open."""

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator['ExecutionBackend']:
        """
        Scope a unit of work in a transaction.

        Joins the current transaction if one is already open; otherwise
        begins one, commits on success and rolls back on any exception.
        """
        if self.in_transaction():
            yield self
            return

        await self.begin()
        try:
            yield self
        except BaseException:
            await self.rollback()
            raise
        else:
            try:
                await self.commit()
            except ExecutionError:
                # A refused COMMIT (e.g. SQLITE_BUSY) leaves it open
                if self.in_transaction():
                    await self.rollback()
                raise

    async def table_exists(self, table: str) -> bool:
        """
        Check whether a table exists without creating it.

        Must be called outside an open transaction: on PostgreSQL the
        failed check would abort the caller's transaction. A busy
        database is reported, not mistaken for a missing table.
        """
        try:
            async with self.transaction():
                await self.fetch_all(f"SELECT 1 FROM {table} WHERE 1 = 0")
        except ExecutionError as e:
            if e.contention:
                raise
            return False
        return True
