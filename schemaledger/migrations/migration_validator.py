#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Migration lint for safety and compatibility checks.

Validates pending units for destructive operations, dialect limitations
and basic syntax errors. Findings carry a severity level (INFO, WARNING,
ERROR); ERROR findings abort planning before anything executes.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple

from sqlparse import lexer
from sqlparse.tokens import Error, Punctuation

from .migration import MigrationUnit
from .statements import strip_comments


class WarningLevel(Enum):
    """Severity levels for validation warnings."""
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class ValidationWarning:
    """
    Finding from migration lint.

    Attributes:
        level: Severity level (INFO, WARNING, ERROR)
        message: Human-readable warning message
        identifier: Identifier of the unit that triggered the warning
        category: 'destructive', 'dialect', 'syntax' or 'reversibility'

    Example:
        >>> warning = ValidationWarning(
        ...     level=WarningLevel.ERROR,
        ...     message="SQLite does not support ALTER COLUMN",
        ...     identifier='003',
        ...     category='dialect'
        ... )
        >>> print(warning)
        [ERROR] Migration 003: SQLite does not support ALTER COLUMN
    """
    level: WarningLevel
    message: str
    identifier: str
    category: str

    def to_dict(self) -> dict:
        """Convert to dictionary for structured output."""
        return {
            'level': self.level.value,
            'message': self.message,
            'identifier': self.identifier,
            'category': self.category
        }

    def __str__(self) -> str:
        return f"[{self.level.value}] Migration {self.identifier}: {self.message}"


class MigrationValidator:
    """
    Lints migration units before they are planned.

    Checks performed:
    - Destructive operations (DROP COLUMN, DROP TABLE, TRUNCATE)
    - SQLite limitations (ALTER COLUMN, ADD CONSTRAINT)
    - Unbalanced parentheses
    - Multi-statement units on backends without transactional DDL
    - Missing reverse script

    Attributes:
        db_type: Dialect name ('sqlite', 'postgresql', etc.)
        transactional_ddl: Whether the backend can roll DDL back

    Example:
        >>> validator = MigrationValidator(db_type='sqlite')
        >>> warnings = validator.validate_unit(unit)
        >>> errors = [w for w in warnings if w.level == WarningLevel.ERROR]
    """

    DROP_COLUMN_PATTERN = re.compile(r'\bDROP\s+COLUMN\b', re.IGNORECASE)
    DROP_TABLE_PATTERN = re.compile(r'\bDROP\s+TABLE\b', re.IGNORECASE)
    TRUNCATE_PATTERN = re.compile(r'\bTRUNCATE\b', re.IGNORECASE)
    ALTER_COLUMN_PATTERN = re.compile(r'\bALTER\s+COLUMN\b', re.IGNORECASE)
    ADD_CONSTRAINT_PATTERN = re.compile(r'\bADD\s+CONSTRAINT\b', re.IGNORECASE)

    def __init__(self, db_type: str = 'sqlite', transactional_ddl: bool = True):
        self.db_type = db_type.lower()
        self.transactional_ddl = transactional_ddl

    def validate_unit(self, unit: MigrationUnit) -> List[ValidationWarning]:
        """
        Lint a unit's forward script.

        Args:
            unit: Migration unit to validate

        Returns:
            List of ValidationWarning objects (empty if no issues)
        """
        sql = strip_comments(unit.forward_script)

        warnings = []
        warnings.extend(self._check_destructive_operations(unit, sql))
        if self.db_type == 'sqlite':
            warnings.extend(self._check_sqlite_limitations(unit, sql))
        warnings.extend(self._check_syntax(unit, sql))

        if not self.transactional_ddl and len(unit.forward_statements) > 1:
            warnings.append(ValidationWarning(
                level=WarningLevel.WARNING,
                message=f"{len(unit.forward_statements)} statements on a "
                        f"backend without transactional DDL; a failure part-way "
                        f"leaves earlier statements applied.",
                identifier=unit.identifier,
                category='dialect'
            ))

        if not unit.has_reverse:
            warnings.append(ValidationWarning(
                level=WarningLevel.INFO,
                message="No reverse script; rollback past this unit will be rejected.",
                identifier=unit.identifier,
                category='reversibility'
            ))

        return warnings

    def _check_destructive_operations(self, unit: MigrationUnit,
                                      sql: str) -> List[ValidationWarning]:
        """
        Check for operations that destroy data.

        All generate WARNING level to allow execution with acknowledgment.
        """
        checks = (
            (self.DROP_COLUMN_PATTERN,
             "Migration drops column (potential data loss). "
             "Ensure column data is no longer needed or backed up."),
            (self.DROP_TABLE_PATTERN,
             "Migration drops table (all table data will be deleted). "
             "Ensure data is backed up or no longer needed."),
            (self.TRUNCATE_PATTERN,
             "Migration truncates table (all rows will be deleted). "
             "Ensure data is backed up or no longer needed."),
        )
        return [
            ValidationWarning(
                level=WarningLevel.WARNING,
                message=message,
                identifier=unit.identifier,
                category='destructive'
            )
            for pattern, message in checks
            if pattern.search(sql)
        ]

    def _check_sqlite_limitations(self, unit: MigrationUnit,
                                  sql: str) -> List[ValidationWarning]:
        """SQLite has limited ALTER TABLE support."""
        warnings = []

        if self.ALTER_COLUMN_PATTERN.search(sql):
            warnings.append(ValidationWarning(
                level=WarningLevel.ERROR,
                message="SQLite does not support ALTER COLUMN. "
                        "Use the shadow table pattern (phase: build/copy/swap).",
                identifier=unit.identifier,
                category='dialect'
            ))

        if self.ADD_CONSTRAINT_PATTERN.search(sql):
            warnings.append(ValidationWarning(
                level=WarningLevel.ERROR,
                message="SQLite does not support ADD CONSTRAINT. "
                        "Define constraints in CREATE TABLE or rebuild the table.",
                identifier=unit.identifier,
                category='dialect'
            ))

        return warnings

    def _check_syntax(self, unit: MigrationUnit,
                      sql: str) -> List[ValidationWarning]:
        """
        Check for unbalanced parentheses and quotes outside literals.

        A heuristic; the database remains the final judge.
        """
        warnings = []
        open_parens, close_parens, stray_quotes = _count_tokens(sql)
        if open_parens != close_parens:
            warnings.append(ValidationWarning(
                level=WarningLevel.ERROR,
                message=f"Unmatched parentheses: {open_parens} open, {close_parens} close",
                identifier=unit.identifier,
                category='syntax'
            ))

        if stray_quotes:
            warnings.append(ValidationWarning(
                level=WarningLevel.ERROR,
                message="Unmatched single quote outside string literals",
                identifier=unit.identifier,
                category='syntax'
            ))

        return warnings


def _count_tokens(sql: str) -> Tuple[int, int, int]:
    """
    Count parentheses and stray single quotes in code tokens.

    The sqlparse lexer emits string literals, quoted identifiers and
    dollar-quoted bodies as single tokens, so their contents are never
    counted. A quote
    that opens no complete literal is lexed as an Error token.
    """
    open_parens = close_parens = stray_quotes = 0
    for ttype, value in lexer.tokenize(sql):
        if ttype in Punctuation:
            if value == '(':
                open_parens += 1
            elif value == ')':
                close_parens += 1
        elif ttype is Error and value == "'":
            stray_quotes += 1
    return open_parens, close_parens, stray_quotes
