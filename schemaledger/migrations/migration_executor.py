#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Migration executor with transaction management and ledger tracking.

Executes one planned step at a time using the strategy the safety
planner selected, and records the outcome in the version ledger before
returning, so the ledger write for unit N always happens before unit N+1
is attempted.

Strategies:
    TRANSACTIONAL   statements and the ledger write commit together; a
                    failure rolls everything back and records 'failed'
    AUTOCOMMIT      each statement commits on its own (backends without
                    transactional DDL); a failure part-way leaves the
                    earlier statements applied and is reported as such
    SHADOW_SWAP     build phase, then copy statements repeated in bounded
                    batches (each its own transaction, lease renewed in
                    between) until a batch moves no rows, then the swap
                    phase and ledger write in one transaction

Once a statement has been sent it is never interrupted. Cancellation and
lease renewal only happen between statement groups and copy batches.
"""
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from schemaledger.errors import (
    ExecutionError,
    LedgerWriteConflict,
    MigrationError,
    NoReverseScript,
)
from schemaledger.storage import ExecutionBackend

from .migration import MigrationUnit, Phase, VersionLedgerEntry
from .safety_planner import PlannedStep, Strategy
from .version_ledger import VersionLedger

Heartbeat = Callable[[], Awaitable[None]]

FORWARD = 'forward'
REVERSE = 'reverse'


@dataclass
class MigrationResult:
    """
    Result of executing one unit.

    Attributes:
        identifier: Migration unit identifier
        direction: 'forward' or 'reverse'
        strategy: Strategy used
        success: Whether the unit completed and was recorded
        execution_time_ms: Execution time in milliseconds
        statements_executed: Statements that completed (copy batches count once)
        batches: Copy batches run (SHADOW_SWAP only)
        error: The failure (None if success)
    """
    identifier: str
    direction: str
    strategy: Strategy
    success: bool
    execution_time_ms: int
    statements_executed: int = 0
    batches: int = 0
    error: Optional[MigrationError] = None

    @property
    def error_message(self) -> Optional[str]:
        return self.error.message if self.error is not None else None


class CopyDidNotConverge(ExecutionError):
    """Copy phase still moved rows after max_batches batches."""

    code = "COPY_DID_NOT_CONVERGE"


class MigrationExecutor:
    """
    Executes planned steps and records each outcome in the ledger.

    Attributes:
        backend: Execution backend for the target database
        ledger: Version ledger of the environment
        actor: Recorded as applied_by
        batch_size: Rows per copy batch (bound as :batch_size)
        max_batches: Upper bound on copy batches per statement
        logger: Logger for execution tracking

    Example:
        executor = MigrationExecutor(backend, ledger, actor='deploy@ci')

        # Apply a planned step, renewing the lease between copy batches
        result = await executor.apply(step, heartbeat=lambda: lock.renew(lease))

        # Revert an applied unit
        result = await executor.revert(unit)
    """

    def __init__(self, backend: ExecutionBackend, ledger: VersionLedger,
                 actor: str = 'system', batch_size: int = 1000,
                 max_batches: int = 100000):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        self.backend = backend
        self.ledger = ledger
        self.actor = actor
        self.batch_size = batch_size
        self.max_batches = max_batches
        self.logger = logging.getLogger(__name__)

    async def apply(self, step: PlannedStep,
                    heartbeat: Optional[Heartbeat] = None) -> MigrationResult:
        """
        Apply one planned step and record it.

        Args:
            step: Unit and strategy from the execution plan
            heartbeat: Awaited between copy batches (lease renewal)

        Returns:
            MigrationResult; failures are returned, never raised
        """
        unit = step.unit
        result = MigrationResult(
            identifier=unit.identifier,
            direction=FORWARD,
            strategy=step.strategy,
            success=False,
            execution_time_ms=0,
        )
        start_time = time.monotonic()

        self.logger.info(
            'Applying migration %s (%s) via %s [%s]',
            unit.identifier, unit.description, step.strategy.value,
            step.safety_class.value,
        )

        try:
            if step.strategy == Strategy.TRANSACTIONAL:
                async with self.backend.transaction():
                    await self._run_forward(unit, result, heartbeat=None)
                    result.execution_time_ms = self._elapsed_ms(start_time)
                    await self.ledger.record(self._entry(unit, result))
            elif step.strategy == Strategy.AUTOCOMMIT:
                await self._run_forward(unit, result, heartbeat=heartbeat,
                                        autocommit=True)
                result.execution_time_ms = self._elapsed_ms(start_time)
                await self.ledger.record(self._entry(unit, result))
            else:
                await self._run_shadow_swap(unit, result, start_time, heartbeat)

        except MigrationError as e:
            result.execution_time_ms = self._elapsed_ms(start_time)
            result.error = self._describe_failure(e, unit, result, step.strategy)
            self.logger.error(
                'Failed to apply migration %s: %s', unit.identifier, e
            )
            await self._record_failure(unit, result)
            return result

        result.success = True
        self.logger.info(
            'Applied migration %s (%dms, %d statements%s)',
            unit.identifier, result.execution_time_ms,
            result.statements_executed,
            f', {result.batches} copy batches' if result.batches else '',
        )
        return result

    async def revert(self, unit: MigrationUnit) -> MigrationResult:
        """
        Run a unit's reverse script and mark it rolled back.

        Transactional when the backend supports transactional DDL,
        otherwise statement by statement.

        Returns:
            MigrationResult; failures are returned, never raised
        """
        transactional = self.backend.supports_transactional_ddl
        result = MigrationResult(
            identifier=unit.identifier,
            direction=REVERSE,
            strategy=Strategy.TRANSACTIONAL if transactional else Strategy.AUTOCOMMIT,
            success=False,
            execution_time_ms=0,
        )
        start_time = time.monotonic()

        self.logger.info('Rolling back migration %s (%s)',
                         unit.identifier, unit.description)

        try:
            if not unit.has_reverse:
                raise NoReverseScript([unit.identifier])
            if transactional:
                async with self.backend.transaction():
                    await self._run_statements(unit.reverse_statements, result)
                    result.execution_time_ms = self._elapsed_ms(start_time)
                    await self._mark_rolled_back(unit, result)
            else:
                await self._run_statements(unit.reverse_statements, result,
                                           autocommit=True)
                result.execution_time_ms = self._elapsed_ms(start_time)
                await self._mark_rolled_back(unit, result)

        except MigrationError as e:
            result.execution_time_ms = self._elapsed_ms(start_time)
            result.error = self._describe_failure(e, unit, result,
                                                  result.strategy)
            self.logger.error(
                'Failed to roll back migration %s: %s', unit.identifier, e
            )
            try:
                await self.ledger.record_rollback_failure(
                    unit.identifier, result.error.message,
                    checksum=unit.checksum, applied_by=self.actor,
                    duration_ms=result.execution_time_ms,
                )
            except MigrationError as record_error:
                self.logger.error(
                    'Failed to record rollback failure for %s: %s',
                    unit.identifier, record_error,
                )
            return result

        result.success = True
        self.logger.info('Rolled back migration %s (%dms)',
                         unit.identifier, result.execution_time_ms)
        return result

    # ==================== Strategies ====================

    async def _run_forward(self, unit: MigrationUnit, result: MigrationResult,
                           heartbeat: Optional[Heartbeat],
                           autocommit: bool = False) -> None:
        """
        Run a forward script in order.

        Copy-phase statements of a phased script are run to completion
        in batches even outside the shadow strategy.
        """
        if not unit.phases:
            await self._run_statements(unit.forward_statements, result,
                                       autocommit=autocommit)
            return

        for script_phase in unit.phases:
            if script_phase.phase == Phase.COPY:
                for statement in script_phase.statements:
                    await self._copy_in_batches(unit, statement, result,
                                                heartbeat if autocommit else None,
                                                autocommit=autocommit)
            else:
                await self._run_statements(script_phase.statements, result,
                                           autocommit=autocommit)

    async def _run_shadow_swap(self, unit: MigrationUnit,
                               result: MigrationResult, start_time: float,
                               heartbeat: Optional[Heartbeat]) -> None:
        atomic = self.backend.supports_transactional_ddl

        build = unit.phase_statements(Phase.BUILD)
        self.logger.info('Migration %s: building shadow (%d statements)',
                         unit.identifier, len(build))
        if atomic:
            async with self.backend.transaction():
                await self._run_statements(build, result)
        else:
            await self._run_statements(build, result, autocommit=True)

        for statement in unit.phase_statements(Phase.COPY):
            await self._copy_in_batches(unit, statement, result, heartbeat,
                                        autocommit=True)

        if heartbeat is not None:
            await heartbeat()

        swap = unit.phase_statements(Phase.SWAP)
        self.logger.info('Migration %s: swapping (%d statements)',
                         unit.identifier, len(swap))
        if atomic:
            async with self.backend.transaction():
                await self._run_statements(swap, result)
                result.execution_time_ms = self._elapsed_ms(start_time)
                await self.ledger.record(self._entry(unit, result))
        else:
            await self._run_statements(swap, result, autocommit=True)
            result.execution_time_ms = self._elapsed_ms(start_time)
            await self.ledger.record(self._entry(unit, result))

    async def _copy_in_batches(self, unit: MigrationUnit, statement: str,
                               result: MigrationResult,
                               heartbeat: Optional[Heartbeat],
                               autocommit: bool) -> None:
        """
        Repeat a copy statement until it affects no rows.

        The statement is executed with a :batch_size bind parameter. A
        driver that reports no row count (-1) ends the loop after one
        batch.
        """
        for batch in range(1, self.max_batches + 1):
            if autocommit:
                async with self.backend.transaction():
                    moved = await self.backend.query(
                        statement, {'batch_size': self.batch_size}
                    )
            else:
                moved = await self.backend.query(
                    statement, {'batch_size': self.batch_size}
                )
            result.batches += 1

            self.logger.debug('Migration %s: copy batch %d moved %d rows',
                              unit.identifier, batch, moved)
            if moved <= 0:
                result.statements_executed += 1
                return

            if heartbeat is not None:
                await heartbeat()

        raise CopyDidNotConverge(
            f"Copy statement still moving rows after {self.max_batches} "
            f"batches of {self.batch_size}",
            statement=statement,
            identifier=unit.identifier,
        )

    async def _run_statements(self, statements: Sequence[str],
                              result: MigrationResult,
                              autocommit: bool = False) -> None:
        for statement in statements:
            if autocommit:
                async with self.backend.transaction():
                    await self.backend.execute(statement)
            else:
                await self.backend.execute(statement)
            result.statements_executed += 1

    # ==================== Ledger ====================

    def _entry(self, unit: MigrationUnit,
               result: MigrationResult) -> VersionLedgerEntry:
        return VersionLedgerEntry(
            identifier=unit.identifier,
            checksum=unit.checksum,
            applied_at=self.ledger.clock(),
            applied_by=self.actor,
            duration_ms=result.execution_time_ms,
            description=unit.description,
        )

    async def _mark_rolled_back(self, unit: MigrationUnit,
                                result: MigrationResult) -> None:
        await self.ledger.mark_rolled_back(
            unit.identifier, checksum=unit.checksum, applied_by=self.actor,
            duration_ms=result.execution_time_ms,
        )

    async def _record_failure(self, unit: MigrationUnit,
                              result: MigrationResult) -> None:
        """Record a failed apply unless another executor already succeeded."""
        if isinstance(result.error, LedgerWriteConflict):
            # Another executor recorded this unit as succeeded
            return
        try:
            await self.ledger.mark_failed(
                unit.identifier, result.error.message,
                checksum=unit.checksum, applied_by=self.actor,
                duration_ms=result.execution_time_ms,
                description=unit.description,
            )
        except MigrationError as record_error:
            self.logger.error(
                'Failed to record migration failure for %s: %s',
                unit.identifier, record_error,
            )

    def _describe_failure(self, error: MigrationError, unit: MigrationUnit,
                          result: MigrationResult,
                          strategy: Strategy) -> MigrationError:
        """Attach the unit identifier and partial-progress notes."""
        if error.identifier is None:
            error.identifier = unit.identifier

        if strategy != Strategy.TRANSACTIONAL and result.statements_executed:
            note = (f"{result.statements_executed} statement(s) had already "
                    f"committed; manual repair may be needed before retrying")
            error.details['partial'] = note
            error.append_note(note)
        return error

    @staticmethod
    def _elapsed_ms(start_time: float) -> int:
        return int((time.monotonic() - start_time) * 1000)
