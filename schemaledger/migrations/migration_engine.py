"""
Execution engine: the run state machine.

    Planning -> Locked -> Applying -> Completed
                                   -> Failed      (partial progress recorded)
                                   -> Cancelled   (between units only)
    Planning -> LockDenied                        (no changes made; lease
                                                   held or database busy)
    Planning -> Failed                            (catalog/drift/gap errors,
                                                   no changes made)

Planning always reads the ledger fresh; nothing about the environment is
cached between runs. The plan is computed once before the lease is
requested (so catalog problems never wait on a lock) and again after it
is granted, because another executor may have advanced the ledger in
between.

Units run strictly one at a time in ascending identifier order. The
lease is renewed before each unit and between copy batches, and released
on every exit path; if release itself fails the lease's expiry is the
fallback.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from schemaledger.errors import (
    ChecksumMismatch,
    ExecutionError,
    LockTimeout,
    MigrationError,
    MissingPredecessor,
    SchemaDrift,
    StaleLeaseReclaimed,
)
from schemaledger.storage import ExecutionBackend

from .lock_coordinator import BUSY_HOLDER, Lease, LockCoordinator
from .migration import MigrationUnit, VersionLedgerEntry
from .migration_executor import MigrationExecutor, MigrationResult
from .migration_store import MigrationStore
from .migration_validator import MigrationValidator
from .rollback_planner import RollbackPlan, RollbackPlanner
from .safety_planner import ExecutionPlan, SafetyPlanner
from .version_ledger import VersionLedger

logger = logging.getLogger(__name__)


class RunState(Enum):
    """States of one engine run."""
    PLANNING = "Planning"
    LOCKED = "Locked"
    APPLYING = "Applying"
    COMPLETED = "Completed"
    FAILED = "Failed"
    LOCK_DENIED = "LockDenied"
    CANCELLED = "Cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    RunState.COMPLETED, RunState.FAILED, RunState.LOCK_DENIED,
    RunState.CANCELLED,
})

_ALLOWED_TRANSITIONS = {
    RunState.PLANNING: {RunState.LOCKED, RunState.COMPLETED, RunState.FAILED,
                        RunState.LOCK_DENIED, RunState.CANCELLED},
    RunState.LOCKED: {RunState.APPLYING, RunState.FAILED},
    RunState.APPLYING: {RunState.COMPLETED, RunState.FAILED,
                        RunState.CANCELLED},
}


class CancelToken:
    """
    Cooperative cancellation flag.

    Checked only before a unit starts; a unit that has begun always runs
    to success or failure first.
    """

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: str = 'cancelled') -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason
            logger.warning("Cancellation requested (%s); stopping before "
                           "the next unit", reason)

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class RunResult:
    """
    Outcome of an apply or rollback run.

    Attributes:
        operation: 'apply' or 'rollback'
        state: Terminal RunState
        transitions: Every state visited, in order
        planned: Identifiers in the (final) plan
        results: Per-unit results in execution order
        error: Reason for a Failed / LockDenied run
        failed_identifier: Unit the run stopped at, if any
        dry_run: True when only planning was performed
        reclaimed: Set when a stale lease was taken over
    """
    operation: str
    state: RunState = RunState.PLANNING
    transitions: List[RunState] = field(default_factory=lambda: [RunState.PLANNING])
    planned: List[str] = field(default_factory=list)
    results: List[MigrationResult] = field(default_factory=list)
    error: Optional[MigrationError] = None
    failed_identifier: Optional[str] = None
    dry_run: bool = False
    reclaimed: Optional[StaleLeaseReclaimed] = None

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.COMPLETED

    @property
    def completed_identifiers(self) -> List[str]:
        """Identifiers applied (or reverted) successfully in this run."""
        return [r.identifier for r in self.results if r.success]

    def __repr__(self) -> str:
        return (f"<RunResult({self.operation}, {self.state.value}, "
                f"{len(self.completed_identifiers)}/{len(self.planned)})>")


@dataclass
class StatusReport:
    """Read-only view of an environment."""
    environment: str
    applied: List[VersionLedgerEntry] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)
    failed: List[VersionLedgerEntry] = field(default_factory=list)
    lock_holder: Optional[str] = None
    problem: Optional[MigrationError] = None


class MigrationEngine:
    """
    Applies and reverts migration units against one environment.

    Attributes:
        backend: Execution backend (connected) for the environment
        source: Migration source or directory path
        environment: Environment name (one lease per environment)
        store: Catalog loader
        ledger: Version ledger
        lock: Lock coordinator
        planner: Safety planner
        executor: Migration executor
        rollback_planner: Rollback planner
        actor: Recorded as applied_by
        lock_timeout: Seconds to wait for the lease

    Example:
        >>> engine = MigrationEngine(backend, 'migrations', 'staging')
        >>> result = await engine.apply()
        >>> result.state
        <RunState.COMPLETED: 'Completed'>
    """

    def __init__(self, backend: ExecutionBackend, source, environment: str, *,
                 store: Optional[MigrationStore] = None,
                 ledger: Optional[VersionLedger] = None,
                 lock: Optional[LockCoordinator] = None,
                 planner: Optional[SafetyPlanner] = None,
                 executor: Optional[MigrationExecutor] = None,
                 rollback_planner: Optional[RollbackPlanner] = None,
                 actor: str = 'system',
                 lock_timeout: float = 30.0):
        self.backend = backend
        self.source = source
        self.environment = environment
        self.store = store or MigrationStore()
        self.ledger = ledger or VersionLedger(backend)
        self.lock = lock or LockCoordinator(backend, table=f'{self.ledger.table}_lock')
        self.planner = planner or SafetyPlanner(
            transactional_ddl=backend.supports_transactional_ddl,
            validator=MigrationValidator(
                db_type=backend.dialect,
                transactional_ddl=backend.supports_transactional_ddl,
            ),
        )
        self.executor = executor or MigrationExecutor(backend, self.ledger, actor=actor)
        self.rollback_planner = rollback_planner or RollbackPlanner()
        self.actor = actor
        self.lock_timeout = lock_timeout

    # ==================== Operations ====================

    async def apply(self, dry_run: bool = False,
                    cancel: Optional[CancelToken] = None) -> RunResult:
        """
        Apply every pending unit.

        Args:
            dry_run: Plan only (no lease, no statements, no ledger writes)
            cancel: Cooperative cancellation token

        Returns:
            RunResult in a terminal state
        """
        result = RunResult(operation='apply', dry_run=dry_run)
        return await self._run(
            result, lambda: self._plan_apply(create=not dry_run),
            lambda step, heartbeat: self.executor.apply(step, heartbeat=heartbeat),
            cancel,
        )

    async def rollback(self, to: str, dry_run: bool = False,
                       cancel: Optional[CancelToken] = None) -> RunResult:
        """
        Revert applied units above a target identifier.

        Args:
            to: Target identifier (stays applied)
            dry_run: Plan only
            cancel: Cooperative cancellation token

        Returns:
            RunResult in a terminal state
        """
        result = RunResult(operation='rollback', dry_run=dry_run)
        return await self._run(
            result, lambda: self._plan_rollback(to, create=not dry_run),
            lambda step, heartbeat: self.executor.revert(step.unit),
            cancel,
        )

    async def status(self) -> StatusReport:
        """
        Report applied and pending units without writing anything.

        Catalog and drift problems are reported on the result, not raised.
        """
        report = StatusReport(environment=self.environment)

        entries = await self._read_entries(create=False)
        report.applied = [e for e in entries if e.succeeded]
        report.failed = [e for e in entries if not e.succeeded]

        current = await self.lock.current(self.environment)
        if current is not None:
            report.lock_holder = current['holder']

        try:
            plan = await self._compute_pending(entries)
        except MigrationError as e:
            report.problem = e
            try:
                catalog = await self.store.load(self.source)
            except MigrationError:
                catalog = []
            applied = {e.identifier for e in report.applied}
            report.pending = [u.identifier for u in catalog
                              if u.identifier not in applied]
        else:
            report.pending = [u.identifier for u in plan]

        return report

    # ==================== Run loop ====================

    async def _run(self, result: RunResult,
                   make_plan: Callable[[], Awaitable[Sequence]],
                   run_step: Callable[..., Awaitable[MigrationResult]],
                   cancel: Optional[CancelToken]) -> RunResult:
        logger.info("Run %s on '%s'%s: %s", result.operation, self.environment,
                    ' (dry run)' if result.dry_run else '',
                    RunState.PLANNING.value)

        try:
            plan = await self._plan_unlocked(make_plan)
        except LockTimeout as e:
            result.error = e
            return self._transition(result, RunState.LOCK_DENIED)
        except MigrationError as e:
            return self._fail(result, e)

        result.planned = plan.identifiers
        if result.dry_run or not plan:
            if plan:
                logger.info("Dry run, would %s: %s", result.operation,
                            ', '.join(result.planned))
            else:
                logger.info("Nothing to %s on '%s'", result.operation,
                            self.environment)
            return self._transition(result, RunState.COMPLETED)

        if cancel is not None and cancel.cancelled:
            return self._transition(result, RunState.CANCELLED)

        try:
            lease = await self.lock.acquire(self.environment, self.lock_timeout)
        except LockTimeout as e:
            result.error = e
            return self._transition(result, RunState.LOCK_DENIED)
        except MigrationError as e:
            return self._fail(result, e)

        result.reclaimed = lease.reclaimed
        self._transition(result, RunState.LOCKED)

        try:
            return await self._run_locked(result, make_plan, run_step,
                                          lease, cancel)
        finally:
            await self._release(lease)

    async def _plan_unlocked(self, make_plan: Callable[[], Awaitable[Sequence]]):
        """
        Plan before the lease is held.

        Another executor in the middle of a migration can keep the database
        busy. That is lock contention: retried until lock_timeout, then
        raised as LockTimeout.
        """
        deadline = time.monotonic() + max(self.lock_timeout, 0.0)
        while True:
            try:
                return await make_plan()
            except ExecutionError as e:
                if not e.contention:
                    raise
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise LockTimeout(self.environment, self.lock_timeout,
                                      BUSY_HOLDER) from e
                logger.debug("Database busy while planning on '%s', retrying",
                             self.environment)
                await asyncio.sleep(min(self.lock.poll_interval, remaining))

    async def _run_locked(self, result: RunResult,
                          make_plan: Callable[[], Awaitable[Sequence]],
                          run_step: Callable[..., Awaitable[MigrationResult]],
                          lease: Lease,
                          cancel: Optional[CancelToken]) -> RunResult:
        try:
            plan = await make_plan()
        except MigrationError as e:
            return self._fail(result, e)

        if plan.identifiers != result.planned:
            logger.info("Ledger changed while waiting for the lease, "
                        "re-planned: %s", ', '.join(plan.identifiers) or 'nothing')
        result.planned = plan.identifiers
        self._transition(result, RunState.APPLYING)

        async def heartbeat():
            await self.lock.renew(lease)

        for step in plan:
            if cancel is not None and cancel.cancelled:
                logger.warning("Run cancelled before %s (%s)", step.identifier,
                               cancel.reason)
                return self._transition(result, RunState.CANCELLED)

            try:
                await heartbeat()
            except MigrationError as e:
                result.failed_identifier = step.identifier
                return self._fail(result, e)

            step_result = await run_step(step, heartbeat)
            result.results.append(step_result)

            if not step_result.success:
                result.failed_identifier = step.identifier
                return self._fail(result, step_result.error)

        return self._transition(result, RunState.COMPLETED)

    async def _release(self, lease: Lease) -> None:
        try:
            await self.lock.release(lease)
        except MigrationError as e:
            logger.error(
                "Failed to release migration lease for '%s': %s. It expires "
                "in %.0fs and can then be reclaimed.",
                lease.lock_name, e, lease.remaining(self.lock.clock()),
            )

    def _transition(self, result: RunResult, state: RunState) -> RunResult:
        allowed = _ALLOWED_TRANSITIONS.get(result.state, set())
        if state not in allowed:
            raise RuntimeError(
                f"Illegal run transition {result.state.value} -> {state.value}"
            )
        logger.info("Run %s on '%s': %s -> %s", result.operation,
                    self.environment, result.state.value, state.value)
        result.state = state
        result.transitions.append(state)
        return result

    def _fail(self, result: RunResult, error: MigrationError) -> RunResult:
        result.error = error
        if result.failed_identifier is None:
            result.failed_identifier = error.identifier
        logger.error("Run %s on '%s' failed%s: %s", result.operation,
                     self.environment,
                     f" at {result.failed_identifier}" if result.failed_identifier else '',
                     error)
        return self._transition(result, RunState.FAILED)

    # ==================== Planning ====================

    async def _read_entries(self, create: bool) -> List[VersionLedgerEntry]:
        """Read the ledger, creating its tables only when create is set."""
        if create:
            await self.ledger.ensure_tables()
        elif not await self.ledger.exists():
            return []
        return await self.ledger.entries()

    async def _plan_apply(self, create: bool = True) -> ExecutionPlan:
        entries = await self._read_entries(create)
        pending = await self._compute_pending(entries)
        return self.planner.plan(pending)

    async def _plan_rollback(self, to: str, create: bool = True) -> RollbackPlan:
        entries = await self._read_entries(create)
        catalog = await self._load_catalog(entries)
        self._check_applied_in_catalog(entries, catalog)
        return self.rollback_planner.plan_rollback(to, catalog, entries)

    async def _load_catalog(self, entries: Sequence[VersionLedgerEntry]) -> List[MigrationUnit]:
        """Load the catalog, turning checksum mismatches into drift."""
        known: Dict[str, str] = {e.identifier: e.checksum for e in entries if e.succeeded}
        try:
            return await self.store.load(self.source, known_checksums=known)
        except ChecksumMismatch as e:
            raise SchemaDrift(
                f"Migration {e.identifier} was modified after it was applied "
                f"(recorded {e.expected[:12]}..., catalog {e.actual[:12]}...)",
                identifier=e.identifier,
                details=e.details,
            ) from e

    def _check_applied_in_catalog(self, entries: Sequence[VersionLedgerEntry],
                                  catalog: Sequence[MigrationUnit]) -> None:
        identifiers = {unit.identifier for unit in catalog}
        missing = sorted(
            e.identifier for e in entries
            if e.succeeded and e.identifier not in identifiers
        )
        if missing:
            raise SchemaDrift(
                f"Applied migration {missing[0]} is missing from the catalog",
                identifier=missing[0],
                details={'missing': missing},
            )

    async def _compute_pending(self, entries: Sequence[VersionLedgerEntry]) -> List[MigrationUnit]:
        """
        Diff the catalog against the ledger.

        Raises:
            SchemaDrift: If an applied unit changed or left the catalog
            MissingPredecessor: If applying the pending units would leave a
                hole in the applied prefix
        """
        catalog = await self._load_catalog(entries)
        self._check_applied_in_catalog(entries, catalog)

        applied = {e.identifier for e in entries if e.succeeded}
        pending = [unit for unit in catalog if unit.identifier not in applied]
        if not pending:
            return []

        first = pending[0]
        ahead = sorted(i for i in applied if i > first.identifier)
        if ahead:
            raise MissingPredecessor(
                ahead[0], first.identifier,
                "it is not applied but a later migration is",
            )

        # A unit the ledger knows about (failed or rolled back) that has
        # since left the catalog would be skipped over.
        catalog_ids = {unit.identifier for unit in catalog}
        for entry in sorted(entries, key=lambda e: e.identifier):
            if entry.succeeded or entry.identifier in catalog_ids:
                continue
            later = [u for u in pending if u.identifier > entry.identifier]
            if later:
                raise MissingPredecessor(
                    later[0].identifier, entry.identifier,
                    f"it is recorded as {entry.status.value} but is absent "
                    f"from the catalog",
                )

        return pending
