"""
Lock coordinator: a mutual-exclusion lease inside the target database.

Executors in independent processes (two deploy pipelines, a developer and
CI) coordinate through a single row per environment in the lock table.
Acquisition is an INSERT guarded by the primary key; an expired row is
taken over with a compare-and-swap UPDATE that only matches while the
previous holder still owns it and has not renewed.

Leases carry a time-to-live. A holder that crashes stops renewing and its
lease becomes reclaimable once expired, so a dead run never wedges the
environment. The cost is that mutual exclusion is only as strong as the
renewal discipline: a live holder stuck inside a statement longer than
the TTL can be overtaken. Reclaiming logs a StaleLeaseReclaimed warning.
"""

import asyncio
import logging
import os
import socket
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from schemaledger.errors import (
    ConfigError,
    ExecutionError,
    LeaseLost,
    LockTimeout,
    StaleLeaseReclaimed,
)
from schemaledger.storage import ExecutionBackend

from .version_ledger import TABLE_NAME_PATTERN

logger = logging.getLogger(__name__)

# Reported as the holder when the database itself was too busy to read
BUSY_HOLDER = 'another session (database busy)'


@dataclass
class Lease:
    """
    Exclusive right to run migrations against one environment.

    Attributes:
        lock_name: Environment the lease covers
        holder: Unique token of the owning executor
        acquired_at: Epoch seconds when acquired
        expires_at: Epoch seconds after which it may be reclaimed
        reclaimed: Warning describing a stale lease taken over, if any
    """

    lock_name: str
    holder: str
    acquired_at: float
    expires_at: float
    reclaimed: Optional[StaleLeaseReclaimed] = None

    def remaining(self, now: float) -> float:
        """Seconds left before expiry (negative once expired)."""
        return self.expires_at - now


def new_holder_token() -> str:
    """Build a unique, human-traceable holder token."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:12]}"


class LockCoordinator:
    """
    Acquires, renews and releases migration leases.

    Attributes:
        backend: Execution backend for the target database
        table: Lock table name
        ttl: Lease time-to-live in seconds
        poll_interval: Seconds between acquisition attempts

    Example:
        >>> coordinator = LockCoordinator(backend, ttl=300)
        >>> lease = await coordinator.acquire('production', timeout=30)
        >>> try:
        ...     await coordinator.renew(lease)
        ... finally:
        ...     await coordinator.release(lease)
    """

    def __init__(self, backend: ExecutionBackend,
                 table: str = 'schema_migrations_lock',
                 ttl: float = 300.0,
                 poll_interval: float = 0.5,
                 clock: Callable[[], float] = time.time):
        if not TABLE_NAME_PATTERN.match(table):
            raise ConfigError(f"Invalid lock table name: {table!r}")
        if ttl <= 0:
            raise ConfigError(f"Lease ttl must be positive, got {ttl}")

        self.backend = backend
        self.table = table
        self.ttl = ttl
        self.poll_interval = poll_interval
        self.clock = clock
        self._table_ready = False

    async def ensure_table(self) -> None:
        """Create the lock table if it doesn't exist."""
        if self._table_ready:
            return
        async with self.backend.transaction():
            await self.backend.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    lock_name VARCHAR(255) NOT NULL PRIMARY KEY,
                    holder VARCHAR(255) NOT NULL,
                    acquired_at DOUBLE PRECISION NOT NULL,
                    expires_at DOUBLE PRECISION NOT NULL
                )
            """)
        self._table_ready = True

    async def acquire(self, environment: str, timeout: float) -> Lease:
        """
        Acquire the lease for an environment.

        Polls every poll_interval seconds until the deadline. A timeout of
        zero makes exactly one attempt. A database busy with another
        session's writes counts as held.

        Args:
            environment: Environment name (one lease per environment)
            timeout: Maximum seconds to wait

        Returns:
            Lease owned by this coordinator

        Raises:
            LockTimeout: If the lease is still held at the deadline
        """
        holder = new_holder_token()
        deadline = time.monotonic() + max(timeout, 0.0)

        while True:
            try:
                lease, current_holder = await self._attempt(environment, holder)
            except ExecutionError as e:
                if not e.contention:
                    raise
                logger.debug("Database busy while acquiring lease for '%s': %s",
                             environment, e.message)
                lease, current_holder = None, BUSY_HOLDER
            if lease is not None:
                return lease

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Timed out waiting for migration lease on '%s' (held by %s)",
                    environment, current_holder,
                )
                raise LockTimeout(environment, timeout, current_holder)

            logger.debug("Lease for '%s' held by %s, retrying",
                         environment, current_holder)
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def _attempt(self, environment: str,
                       holder: str) -> Tuple[Optional[Lease], Optional[str]]:
        """One acquisition attempt; returns (lease, current holder)."""
        await self.ensure_table()
        now = self.clock()

        lease = await self._try_insert(environment, holder, now)
        if lease is not None:
            logger.info("Acquired migration lease for '%s' (%s)",
                        environment, holder)
            return lease, holder

        return await self._try_reclaim(environment, holder, now)

    async def _try_insert(self, environment: str, holder: str,
                          now: float) -> Optional[Lease]:
        try:
            async with self.backend.transaction():
                await self.backend.query(
                    f"INSERT INTO {self.table} (lock_name, holder, acquired_at, "
                    f"expires_at) VALUES (:lock_name, :holder, :acquired_at, "
                    f":expires_at)",
                    {
                        'lock_name': environment,
                        'holder': holder,
                        'acquired_at': now,
                        'expires_at': now + self.ttl,
                    },
                )
        except ExecutionError as e:
            if not (e.integrity or e.contention):
                raise
            return None

        return Lease(environment, holder, now, now + self.ttl)

    async def _try_reclaim(self, environment: str, holder: str,
                           now: float) -> Tuple[Optional[Lease], Optional[str]]:
        """Take over an expired lease; returns (lease, current holder)."""
        current = await self.current(environment)
        if current is None:
            # Released between our INSERT and this read
            return None, None

        if current['expires_at'] >= now:
            return None, current['holder']

        async with self.backend.transaction():
            updated = await self.backend.query(
                f"UPDATE {self.table} SET holder = :holder, "
                f"acquired_at = :acquired_at, expires_at = :expires_at "
                f"WHERE lock_name = :lock_name AND holder = :previous "
                f"AND expires_at < :now",
                {
                    'holder': holder,
                    'acquired_at': now,
                    'expires_at': now + self.ttl,
                    'lock_name': environment,
                    'previous': current['holder'],
                    'now': now,
                },
            )

        if updated != 1:
            # Someone renewed or reclaimed it first
            return None, current['holder']

        warning = StaleLeaseReclaimed(
            environment, current['holder'], current['expires_at']
        )
        logger.warning(
            "%s (expired %.1fs ago). Exactly-once application is "
            "best-effort if that holder is still running.",
            warning, now - current['expires_at'],
        )
        return Lease(environment, holder, now, now + self.ttl,
                     reclaimed=warning), current['holder']

    async def renew(self, lease: Lease) -> None:
        """
        Extend a lease by a full ttl from now.

        Raises:
            LeaseLost: If the lease was reclaimed by another executor
        """
        now = self.clock()
        async with self.backend.transaction():
            updated = await self.backend.query(
                f"UPDATE {self.table} SET expires_at = :expires_at "
                f"WHERE lock_name = :lock_name AND holder = :holder",
                {
                    'expires_at': now + self.ttl,
                    'lock_name': lease.lock_name,
                    'holder': lease.holder,
                },
            )

        if updated != 1:
            raise LeaseLost(
                f"Migration lease for '{lease.lock_name}' is no longer held "
                f"by {lease.holder}"
            )

        lease.expires_at = now + self.ttl
        logger.debug("Renewed lease for '%s' until %.0f",
                     lease.lock_name, lease.expires_at)

    async def release(self, lease: Lease) -> None:
        """Release a lease. Releasing a lease we no longer own is a no-op."""
        async with self.backend.transaction():
            deleted = await self.backend.query(
                f"DELETE FROM {self.table} "
                f"WHERE lock_name = :lock_name AND holder = :holder",
                {'lock_name': lease.lock_name, 'holder': lease.holder},
            )

        if deleted:
            logger.info("Released migration lease for '%s'", lease.lock_name)
        else:
            logger.warning(
                "Migration lease for '%s' was already gone at release",
                lease.lock_name,
            )

    async def current(self, environment: str) -> Optional[Dict]:
        """Return the lock row for an environment, or None if free."""
        if not self._table_ready:
            if not await self.backend.table_exists(self.table):
                return None
            self._table_ready = True
        async with self.backend.transaction():
            rows = await self.backend.fetch_all(
                f"SELECT lock_name, holder, acquired_at, expires_at "
                f"FROM {self.table} WHERE lock_name = :lock_name",
                {'lock_name': environment},
            )
        return rows[0] if rows else None
