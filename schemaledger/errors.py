"""
Migration error types.

This module defines the exception hierarchy for the migration engine,
giving every failure a stable code, a human-readable message and the
identifier of the migration unit it concerns (when there is one).
"""

from typing import Any, Iterable, Optional


class MigrationError(Exception):
    """
    Base class for migration errors.

    All migration errors carry a code, message, the identifier of the
    unit involved (if any) and an optional details dict.
    """

    code = "MIGRATION_ERROR"

    def __init__(
        self,
        message: str,
        identifier: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Initialize migration error.

        Args:
            message: Human-readable error message
            identifier: Migration unit identifier this error concerns
            details: Optional dict of additional context
        """
        self.message = message
        self.identifier = identifier
        self.details = details or {}
        super().__init__(f"[{self.code}] {message}")

    def append_note(self, note: str) -> None:
        """Extend the message in place, keeping str(error) in step."""
        if note in self.message:
            return
        self.message = f"{self.message} ({note})"
        self.args = (f"[{self.code}] {self.message}",)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for structured output."""
        return {
            'code': self.code,
            'message': self.message,
            'identifier': self.identifier,
            'details': self.details,
        }


class ConfigError(MigrationError):
    """Configuration file or environment profile is invalid."""

    code = "CONFIG_ERROR"


# ==================== Catalog Errors ====================


class CatalogError(MigrationError):
    """
    Migration catalog is structurally invalid.

    Raised while loading migration units, before anything executes.
    """

    code = "CATALOG_ERROR"


class MalformedUnit(CatalogError):
    """
    Migration unit definition is malformed.

    Raised when:
    - Forward script is empty
    - Reverse script exists without a forward script
    - Reverse script file is empty
    - A script directive has an unknown value
    """

    code = "MALFORMED_UNIT"


class DuplicateIdentifier(CatalogError):
    """Two migration units share an identifier."""

    code = "DUPLICATE_IDENTIFIER"


class UnparsableScript(CatalogError):
    """
    Statement boundaries cannot be determined.

    Raised when a script ends inside a string literal, quoted identifier,
    block comment or dollar-quoted body.
    """

    code = "UNPARSABLE_SCRIPT"


class ChecksumMismatch(CatalogError):
    """
    Unit content no longer matches a previously seen checksum.

    Attributes:
        expected: Checksum recorded when the unit was applied
        actual: Checksum of the unit as currently loaded
    """

    code = "CHECKSUM_MISMATCH"

    def __init__(self, identifier: str, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Migration {identifier} has been modified after application. "
            f"Expected: {expected[:12]}..., Got: {actual[:12]}...",
            identifier=identifier,
            details={'expected': expected, 'actual': actual},
        )


# ==================== Planning Errors ====================


class SchemaDrift(MigrationError):
    """An already-applied unit diverges from the catalog."""

    code = "SCHEMA_DRIFT"


class MissingPredecessor(MigrationError):
    """
    Applying the pending set would leave a hole in the applied prefix.

    Attributes:
        missing: Identifier of the unit that is not applied
    """

    code = "MISSING_PREDECESSOR"

    def __init__(self, identifier: str, missing: str, reason: str) -> None:
        self.missing = missing
        super().__init__(
            f"Migration {identifier} cannot follow {missing}: {reason}",
            identifier=identifier,
            details={'missing': missing},
        )


class ValidationFailed(MigrationError):
    """
    Lint found ERROR-level problems in a pending unit.

    Attributes:
        warnings: The ValidationWarning objects that caused the failure
    """

    code = "VALIDATION_FAILED"

    def __init__(self, identifier: str, warnings: list) -> None:
        self.warnings = warnings
        super().__init__(
            f"Migration {identifier} failed validation: "
            + "; ".join(w.message for w in warnings),
            identifier=identifier,
            details={'warnings': [w.to_dict() for w in warnings]},
        )


class UnknownIdentifier(MigrationError):
    """Identifier is neither applied nor present in the catalog."""

    code = "UNKNOWN_IDENTIFIER"


# ==================== Lock Errors ====================


class LockError(MigrationError):
    """Base class for lease failures."""

    code = "LOCK_ERROR"


class LockTimeout(LockError):
    """
    Lease could not be acquired before the timeout.

    Attributes:
        holder: Holder of the lease at the last attempt (if known)
        timeout: Seconds waited
    """

    code = "LOCK_TIMEOUT"

    def __init__(self, environment: str, timeout: float,
                 holder: Optional[str] = None) -> None:
        self.environment = environment
        self.timeout = timeout
        self.holder = holder
        super().__init__(
            f"Could not acquire migration lease for '{environment}' "
            f"within {timeout:g}s (held by {holder or 'unknown'})",
            details={'environment': environment, 'holder': holder},
        )


class LeaseLost(LockError):
    """Lease expired and was reclaimed by another executor."""

    code = "LEASE_LOST"


class StaleLeaseReclaimed(RuntimeWarning):
    """
    An expired lease was taken over from a holder that stopped renewing.

    This is a warning, not a failure. It marks the one point where
    exactly-once application is best-effort: if the previous holder is
    still alive but stalled inside a long statement, both executors may
    believe they own the environment until it next tries to renew.
    """

    def __init__(self, environment: str, previous_holder: str,
                 expired_at: float) -> None:
        self.environment = environment
        self.previous_holder = previous_holder
        self.expired_at = expired_at
        super().__init__(
            f"Reclaimed stale migration lease for '{environment}' "
            f"from {previous_holder}"
        )


# ==================== Execution Errors ====================


# Driver codes meaning "another session holds a conflicting lock"
CONTENTION_CODES = frozenset({
    'SQLITE_BUSY', 'SQLITE_LOCKED',
    '55P03',  # lock_not_available
    '40001',  # serialization_failure
    '40P01',  # deadlock_detected
})


class ExecutionError(MigrationError):
    """
    Relational engine rejected a statement.

    Attributes:
        code: Driver error code (SQLite error name, SQLSTATE, or class name)
        statement: Statement that failed (if known)
        original_error: The driver exception
        integrity: True for unique/primary key/foreign key violations
    """

    code = "EXECUTION_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        statement: Optional[str] = None,
        original_error: Optional[BaseException] = None,
        integrity: bool = False,
        identifier: Optional[str] = None,
    ) -> None:
        if code:
            self.code = code
        self.statement = statement
        self.original_error = original_error
        self.integrity = integrity
        super().__init__(message, identifier=identifier,
                         details={'statement': statement})

    @property
    def contention(self) -> bool:
        """True when another session holds a conflicting lock."""
        return self.code in CONTENTION_CODES


class NoReverseScript(MigrationError):
    """
    Rollback range contains units without a reverse script.

    Attributes:
        identifiers: Every unit in the range lacking a reverse script
    """

    code = "NO_REVERSE_SCRIPT"

    def __init__(self, identifiers: Iterable[str]) -> None:
        self.identifiers = list(identifiers)
        super().__init__(
            "Rollback rejected, no reverse script for: "
            + ", ".join(self.identifiers),
            identifier=self.identifiers[0] if self.identifiers else None,
            details={'identifiers': self.identifiers},
        )


class LedgerWriteConflict(MigrationError):
    """A succeeded ledger entry already exists for the identifier."""

    code = "LEDGER_WRITE_CONFLICT"
