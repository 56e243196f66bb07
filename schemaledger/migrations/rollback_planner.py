"""
Rollback planner.

Resolves the reverse scripts needed to bring an environment back down to
a target identifier. The plan covers every currently applied unit above
the target, highest first. Missing reverse scripts are a hard blocker:
if any unit in the range cannot be reverted the whole plan is rejected,
listing every offending identifier, so a rollback never stops partway
through a chain it could not complete.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Iterator, List

from schemaledger.errors import NoReverseScript, UnknownIdentifier

from .migration import MigrationUnit, VersionLedgerEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RollbackStep:
    """An applied unit and its ledger entry, to be reverted."""

    unit: MigrationUnit
    entry: VersionLedgerEntry

    @property
    def identifier(self) -> str:
        return self.unit.identifier


@dataclass
class RollbackPlan:
    """Reverse operations in execution order (highest identifier first)."""

    target: str
    steps: List[RollbackStep] = field(default_factory=list)

    @property
    def identifiers(self) -> List[str]:
        return [step.identifier for step in self.steps]

    def __iter__(self) -> Iterator[RollbackStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)


class RollbackPlanner:
    """
    Plans reverts down to (not including) a target identifier.

    Example:
        >>> planner = RollbackPlanner()
        >>> plan = planner.plan_rollback('003', catalog, ledger_entries)
        >>> plan.identifiers
        ['005', '004']
    """

    def plan_rollback(self, target: str,
                      catalog: Iterable[MigrationUnit],
                      ledger_entries: Iterable[VersionLedgerEntry]) -> RollbackPlan:
        """
        Compute the rollback plan.

        Args:
            target: Identifier to roll back to; it stays applied
            catalog: Loaded migration units
            ledger_entries: Current ledger entries of the environment

        Returns:
            RollbackPlan (empty if nothing is applied above the target)

        Raises:
            UnknownIdentifier: If target is neither applied nor in the catalog
            NoReverseScript: If any unit in the range lacks a reverse script
        """
        units = {unit.identifier: unit for unit in catalog}
        applied = sorted(
            (entry for entry in ledger_entries if entry.succeeded),
            key=lambda entry: entry.identifier,
            reverse=True,
        )

        if target not in units and target not in {e.identifier for e in applied}:
            raise UnknownIdentifier(
                f"Rollback target {target} is neither applied nor in the catalog",
                identifier=target,
            )

        in_range = [entry for entry in applied if entry.identifier > target]

        blocked = [
            entry.identifier for entry in in_range
            if entry.identifier not in units or not units[entry.identifier].has_reverse
        ]
        if blocked:
            logger.error(
                "Rollback to %s rejected, no reverse script for: %s",
                target, ', '.join(blocked),
            )
            raise NoReverseScript(blocked)

        plan = RollbackPlan(
            target=target,
            steps=[RollbackStep(units[entry.identifier], entry) for entry in in_range],
        )
        logger.debug("Rollback to %s: %s", target,
                     ', '.join(plan.identifiers) or 'nothing to revert')
        return plan
