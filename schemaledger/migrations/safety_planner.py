"""
Safety planner: lock-impact classification and strategy selection.

Each pending unit is classified by the lock impact of its forward script:

    INSTANT           metadata-only change, safe at any table size
    BLOCKING_REWRITE  full table rewrite or scan under a blocking lock
    DATA_TRANSFORM    copies or transforms existing rows

A declared '-- safety:' directive wins over inspection. Otherwise each
statement is matched against ordered rules and the most severe match
wins. The strategy is then looked up in STRATEGY_TABLE by
(safety class, shadow capable, transactional DDL); nothing else decides
how a unit executes.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from schemaledger.errors import ValidationFailed

from .migration import DeclaredSafety, MigrationUnit
from .migration_validator import MigrationValidator, WarningLevel
from .statements import strip_comments

logger = logging.getLogger(__name__)


class SafetyClass(Enum):
    """Estimated lock impact of a unit."""
    INSTANT = "instant"
    BLOCKING_REWRITE = "blocking-rewrite"
    DATA_TRANSFORM = "data-transform"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    SafetyClass.INSTANT: 0,
    SafetyClass.BLOCKING_REWRITE: 1,
    SafetyClass.DATA_TRANSFORM: 2,
}


class Strategy(Enum):
    """How the executor runs a unit."""
    # All statements and the ledger write in one transaction
    TRANSACTIONAL = "transactional"
    # Each statement commits on its own; the ledger write follows
    AUTOCOMMIT = "autocommit"
    # Build shadow, copy in bounded batches, swap atomically
    SHADOW_SWAP = "shadow-swap"


DECLARED_CLASSES = {
    DeclaredSafety.ADDITIVE: SafetyClass.INSTANT,
    DeclaredSafety.DESTRUCTIVE: SafetyClass.BLOCKING_REWRITE,
    DeclaredSafety.DATA_TRANSFORM: SafetyClass.DATA_TRANSFORM,
}

# (safety class, shadow capable, transactional DDL) -> strategy
STRATEGY_TABLE: Dict[Tuple[SafetyClass, bool, bool], Strategy] = {
    (SafetyClass.INSTANT, False, True): Strategy.TRANSACTIONAL,
    (SafetyClass.INSTANT, False, False): Strategy.AUTOCOMMIT,
    (SafetyClass.INSTANT, True, True): Strategy.TRANSACTIONAL,
    (SafetyClass.INSTANT, True, False): Strategy.AUTOCOMMIT,
    (SafetyClass.BLOCKING_REWRITE, False, True): Strategy.TRANSACTIONAL,
    (SafetyClass.BLOCKING_REWRITE, False, False): Strategy.AUTOCOMMIT,
    (SafetyClass.BLOCKING_REWRITE, True, True): Strategy.SHADOW_SWAP,
    (SafetyClass.BLOCKING_REWRITE, True, False): Strategy.SHADOW_SWAP,
    (SafetyClass.DATA_TRANSFORM, False, True): Strategy.TRANSACTIONAL,
    (SafetyClass.DATA_TRANSFORM, False, False): Strategy.AUTOCOMMIT,
    (SafetyClass.DATA_TRANSFORM, True, True): Strategy.SHADOW_SWAP,
    (SafetyClass.DATA_TRANSFORM, True, False): Strategy.SHADOW_SWAP,
}


@dataclass(frozen=True)
class ClassificationRule:
    """Statement pattern and the lock impact it implies."""

    pattern: re.Pattern
    safety_class: SafetyClass
    reason: str


def _rule(regex: str, safety_class: SafetyClass, reason: str) -> ClassificationRule:
    return ClassificationRule(
        re.compile(regex, re.IGNORECASE | re.DOTALL), safety_class, reason
    )


# Ordered most severe first; every statement is checked against all rules
CLASSIFICATION_RULES: Tuple[ClassificationRule, ...] = (
    _rule(r'^\s*UPDATE\b', SafetyClass.DATA_TRANSFORM,
          'updates existing rows'),
    _rule(r'^\s*DELETE\s+FROM\b', SafetyClass.DATA_TRANSFORM,
          'deletes existing rows'),
    _rule(r'^\s*INSERT\s+INTO\b.*\bSELECT\b', SafetyClass.DATA_TRANSFORM,
          'copies rows between tables'),
    _rule(r'^\s*MERGE\b', SafetyClass.DATA_TRANSFORM,
          'merges rows'),
    _rule(r'\bALTER\s+COLUMN\b.*\bTYPE\b', SafetyClass.BLOCKING_REWRITE,
          'changes a column type (table rewrite)'),
    _rule(r'\bSET\s+NOT\s+NULL\b', SafetyClass.BLOCKING_REWRITE,
          'adds NOT NULL (full table scan)'),
    _rule(r'\bADD\s+CONSTRAINT\b', SafetyClass.BLOCKING_REWRITE,
          'adds a constraint (full table scan)'),
    _rule(r'\bDROP\s+COLUMN\b', SafetyClass.BLOCKING_REWRITE,
          'drops a column'),
    _rule(r'\bDROP\s+TABLE\b', SafetyClass.BLOCKING_REWRITE,
          'drops a table'),
    _rule(r'\bTRUNCATE\b', SafetyClass.BLOCKING_REWRITE,
          'truncates a table'),
    _rule(r'^\s*CREATE\s+(UNIQUE\s+)?INDEX\b(?!\s+CONCURRENTLY)',
          SafetyClass.BLOCKING_REWRITE, 'builds an index while blocking writes'),
    _rule(r'\bVACUUM\s+FULL\b|^\s*CLUSTER\b', SafetyClass.BLOCKING_REWRITE,
          'rewrites a table'),
)

# Statements that cannot run inside a transaction block
NON_TRANSACTIONAL_PATTERN = re.compile(
    r'\bCONCURRENTLY\b|^\s*VACUUM\b', re.IGNORECASE
)


@dataclass(frozen=True)
class PlannedStep:
    """
    One unit of an execution plan with its chosen strategy.

    Attributes:
        unit: Migration unit to run
        safety_class: Classified lock impact
        strategy: Strategy from STRATEGY_TABLE
        reasons: Why the unit was classified this way
    """

    unit: MigrationUnit
    safety_class: SafetyClass
    strategy: Strategy
    reasons: Tuple[str, ...] = ()

    @property
    def identifier(self) -> str:
        return self.unit.identifier

    def __repr__(self) -> str:
        return (f"<PlannedStep({self.unit.identifier}, "
                f"{self.safety_class.value}, {self.strategy.value})>")


@dataclass
class ExecutionPlan:
    """
    Ordered (unit, strategy) pairs for one run. Never persisted.

    Steps are kept in strictly ascending identifier order.
    """

    steps: List[PlannedStep] = field(default_factory=list)

    def __post_init__(self):
        identifiers = [step.identifier for step in self.steps]
        for previous, current in zip(identifiers, identifiers[1:]):
            if not previous < current:
                raise ValueError(
                    f"Execution plan out of order: {previous} before {current}"
                )

    @property
    def identifiers(self) -> List[str]:
        return [step.identifier for step in self.steps]

    def __iter__(self) -> Iterator[PlannedStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)


class SafetyPlanner:
    """
    Classifies pending units and builds the execution plan.

    Attributes:
        transactional_ddl: Capability flag of the execution backend
        validator: Lint run on every pending unit (ERRORs abort planning)

    Example:
        >>> planner = SafetyPlanner(transactional_ddl=True)
        >>> plan = planner.plan(pending_units)
        >>> [(s.identifier, s.strategy.value) for s in plan]
        [('001', 'transactional'), ('002', 'transactional')]
    """

    def __init__(self, transactional_ddl: bool = True,
                 validator: Optional[MigrationValidator] = None):
        self.transactional_ddl = transactional_ddl
        self.validator = validator

    def classify(self, unit: MigrationUnit) -> Tuple[SafetyClass, Tuple[str, ...]]:
        """
        Classify a unit's lock impact.

        Returns:
            Tuple of (SafetyClass, reasons)
        """
        if unit.declared_safety is not None:
            return (DECLARED_CLASSES[unit.declared_safety],
                    (f"declared {unit.declared_safety.value}",))

        safety_class = SafetyClass.INSTANT
        reasons: List[str] = []
        for statement in unit.forward_statements:
            bare = strip_comments(statement)
            for rule in CLASSIFICATION_RULES:
                if not rule.pattern.search(bare):
                    continue
                if rule.reason not in reasons:
                    reasons.append(rule.reason)
                if rule.safety_class.severity > safety_class.severity:
                    safety_class = rule.safety_class

        return safety_class, tuple(reasons)

    def requires_autocommit(self, unit: MigrationUnit) -> bool:
        """True when a statement cannot run inside a transaction block."""
        return any(
            NON_TRANSACTIONAL_PATTERN.search(strip_comments(statement))
            for statement in unit.forward_statements
        )

    def select_strategy(self, unit: MigrationUnit,
                        safety_class: SafetyClass) -> Strategy:
        transactional = self.transactional_ddl and not self.requires_autocommit(unit)
        return STRATEGY_TABLE[(safety_class, unit.shadow_capable, transactional)]

    def plan(self, units: Iterable[MigrationUnit]) -> ExecutionPlan:
        """
        Build the execution plan for pending units.

        Args:
            units: Pending units in ascending identifier order

        Returns:
            ExecutionPlan

        Raises:
            ValidationFailed: If lint reports ERROR-level findings
        """
        steps = []
        for unit in units:
            self._lint(unit)
            safety_class, reasons = self.classify(unit)
            strategy = self.select_strategy(unit, safety_class)
            logger.debug("Planned %s: %s via %s (%s)", unit.identifier,
                         safety_class.value, strategy.value,
                         ', '.join(reasons) or 'no blocking operations')
            steps.append(PlannedStep(unit, safety_class, strategy, reasons))
        return ExecutionPlan(steps)

    def _lint(self, unit: MigrationUnit) -> None:
        if self.validator is None:
            return

        warnings = self.validator.validate_unit(unit)
        errors = [w for w in warnings if w.level == WarningLevel.ERROR]
        for warning in warnings:
            if warning.level == WarningLevel.WARNING:
                logger.warning("%s", warning)
            elif warning.level == WarningLevel.INFO:
                logger.debug("%s", warning)

        if errors:
            for error in errors:
                logger.error("%s", error)
            raise ValidationFailed(unit.identifier, errors)
