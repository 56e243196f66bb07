"""
Migration data models.

This module defines the core data structures for managing migrations:
- MigrationUnit: A versioned schema change loaded from the catalog
- ScriptPhase: One phase of a shadow-capable forward script
- VersionLedgerEntry: A row of the version ledger inside the target database

MigrationUnit is immutable. Once a unit has been applied anywhere its
content must not change; the checksum makes such edits detectable.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


class DeclaredSafety(Enum):
    """Author hint for the lock impact of a unit."""
    ADDITIVE = "additive"
    DESTRUCTIVE = "destructive"
    DATA_TRANSFORM = "data-transform"


class Phase(Enum):
    """Phases of a shadow copy-and-swap script."""
    BUILD = "build"
    COPY = "copy"
    SWAP = "swap"


class LedgerStatus(Enum):
    """Status of a ledger entry."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    # Only ever written to the history table
    ROLLBACK_FAILED = "rollback_failed"


@dataclass(frozen=True)
class ScriptPhase:
    """Statements belonging to one phase of a shadow-capable script."""

    phase: Phase
    statements: Tuple[str, ...]


@dataclass(frozen=True)
class MigrationUnit:
    """
    Represents a single migration unit with metadata.

    Attributes:
        identifier: Sortable identifier that determines apply order
            (e.g., '001' or '20250114T093000')
        description: Descriptive name from filename (e.g., 'create_users')
        forward_script: Script text applying the change
        reverse_script: Script text reverting the change (None if absent)
        checksum: SHA-256 hash of the forward script
        forward_statements: Forward script split into statements
        reverse_statements: Reverse script split into statements
        declared_safety: Optional author hint from a '-- safety:' directive
        phases: Phase breakdown when the forward script uses
            '-- phase:' directives, empty otherwise
        source_name: Filename(s) the unit was loaded from

    Example:
        >>> unit = MigrationUnit(
        ...     identifier='001',
        ...     description='create_users',
        ...     forward_script='CREATE TABLE users (id INTEGER PRIMARY KEY);',
        ...     reverse_script='DROP TABLE users;',
        ...     checksum='a1b2c3d4...',
        ...     forward_statements=('CREATE TABLE users (id INTEGER PRIMARY KEY)',),
        ...     reverse_statements=('DROP TABLE users',),
        ... )
        >>> print(unit)
        <MigrationUnit(001, create_users)>
    """

    identifier: str
    description: str
    forward_script: str
    reverse_script: Optional[str]
    checksum: str
    forward_statements: Tuple[str, ...]
    reverse_statements: Optional[Tuple[str, ...]] = None
    declared_safety: Optional[DeclaredSafety] = None
    phases: Tuple[ScriptPhase, ...] = field(default=())
    source_name: str = ''

    def __post_init__(self):
        """Validate unit after initialization."""
        if not self.identifier:
            raise ValueError("Migration identifier must not be empty")

        if not self.forward_statements:
            raise ValueError(
                f"Migration {self.identifier} has empty forward script"
            )

    @property
    def has_reverse(self) -> bool:
        """True when a reverse script with statements exists."""
        return bool(self.reverse_statements)

    @property
    def shadow_capable(self) -> bool:
        """True when the forward script declares build and swap phases."""
        declared = {p.phase for p in self.phases}
        return Phase.BUILD in declared and Phase.SWAP in declared

    def phase_statements(self, phase: Phase) -> Tuple[str, ...]:
        """Return the statements for a phase (empty tuple if absent)."""
        statements: Tuple[str, ...] = ()
        for script_phase in self.phases:
            if script_phase.phase == phase:
                statements += script_phase.statements
        return statements

    def __lt__(self, other: 'MigrationUnit') -> bool:
        """Allow sorting units by identifier (plain string order)."""
        if not isinstance(other, MigrationUnit):
            return NotImplemented
        return self.identifier < other.identifier

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<MigrationUnit({self.identifier}, {self.description})>"


@dataclass
class VersionLedgerEntry:
    """
    Represents a unit's recorded state in the version ledger.

    This corresponds to a row in the ledger table of the target database.

    Attributes:
        identifier: Migration unit identifier
        checksum: Checksum at time of application
        applied_at: When the entry was written
        applied_by: User/system that ran the migration
        duration_ms: Time taken to execute
        status: LedgerStatus of the most recent attempt
        description: Unit description
        error_message: Error if the attempt failed (optional)

    Example:
        >>> entry = VersionLedgerEntry(
        ...     identifier='001',
        ...     checksum='a1b2c3d4...',
        ...     applied_at=datetime(2025, 11, 24, 10, 0, 0),
        ...     applied_by='deploy@ci',
        ...     duration_ms=12,
        ...     status=LedgerStatus.SUCCEEDED,
        ... )
        >>> print(entry)
        <VersionLedgerEntry(001, succeeded)>
    """

    identifier: str
    checksum: str
    applied_at: datetime
    applied_by: str
    duration_ms: int
    status: LedgerStatus = LedgerStatus.SUCCEEDED
    description: str = ''
    error_message: Optional[str] = None

    def __post_init__(self):
        """Validate entry after initialization."""
        if isinstance(self.status, str):
            self.status = LedgerStatus(self.status)

        if self.status == LedgerStatus.ROLLBACK_FAILED:
            raise ValueError(
                "Ledger entries cannot carry status 'rollback_failed'"
            )

        if self.duration_ms < 0:
            raise ValueError(
                f"duration_ms must be >= 0, got {self.duration_ms}"
            )

    @property
    def succeeded(self) -> bool:
        return self.status == LedgerStatus.SUCCEEDED

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<VersionLedgerEntry({self.identifier}, {self.status.value})>"


@dataclass
class HistoryRecord:
    """One append-only attempt record from the ledger history table."""

    sequence: int
    identifier: str
    checksum: str
    status: LedgerStatus
    recorded_at: datetime
    recorded_by: str
    duration_ms: int
    error_message: Optional[str] = None
