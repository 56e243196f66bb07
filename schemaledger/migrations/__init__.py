"""
Schema migration and versioning package.

This package provides:
- MigrationUnit / VersionLedgerEntry: Data models
- MigrationStore: Loading and validating units from a source
- VersionLedger: Applied-state record inside the target database
- LockCoordinator: Lease-based mutual exclusion per environment
- SafetyPlanner: Lock-impact classification and strategy selection
- MigrationExecutor: Execution of one unit with ledger recording
- RollbackPlanner: Reverse-order rollback plans
- MigrationEngine: The run state machine tying them together
"""

from .lock_coordinator import Lease, LockCoordinator
from .migration import (
    DeclaredSafety,
    HistoryRecord,
    LedgerStatus,
    MigrationUnit,
    Phase,
    ScriptPhase,
    VersionLedgerEntry,
)
from .migration_engine import (
    CancelToken,
    MigrationEngine,
    RunResult,
    RunState,
    StatusReport,
)
from .migration_executor import MigrationExecutor, MigrationResult
from .migration_sources import (
    DirectorySource,
    HttpSource,
    MappingSource,
    MigrationSource,
    PackageSource,
)
from .migration_store import MigrationStore
from .migration_validator import MigrationValidator, ValidationWarning, WarningLevel
from .rollback_planner import RollbackPlan, RollbackPlanner
from .safety_planner import (
    STRATEGY_TABLE,
    ExecutionPlan,
    PlannedStep,
    SafetyClass,
    SafetyPlanner,
    Strategy,
)
from .version_ledger import VersionLedger

__all__ = [
    'CancelToken',
    'DeclaredSafety',
    'DirectorySource',
    'ExecutionPlan',
    'HistoryRecord',
    'HttpSource',
    'Lease',
    'LedgerStatus',
    'LockCoordinator',
    'MappingSource',
    'MigrationEngine',
    'MigrationExecutor',
    'MigrationResult',
    'MigrationSource',
    'MigrationStore',
    'MigrationUnit',
    'MigrationValidator',
    'PackageSource',
    'Phase',
    'PlannedStep',
    'RollbackPlan',
    'RollbackPlanner',
    'RunResult',
    'RunState',
    'STRATEGY_TABLE',
    'SafetyClass',
    'SafetyPlanner',
    'ScriptPhase',
    'StatusReport',
    'Strategy',
    'ValidationWarning',
    'VersionLedger',
    'VersionLedgerEntry',
    'WarningLevel',
]
