"""
Migration unit store.

This module provides the MigrationStore class which handles:
- Reading migration files from a source (directory, package, bundle, HTTP)
- Parsing files into immutable MigrationUnit objects
- Checksum computation for tamper detection
- Verification of checksums against previously applied units

Two file layouts are accepted:

    Paired files:
        001__create_users.up.sql
        001__create_users.down.sql      (optional)

    Single file with section markers:
        001__create_users.sql

        -- UP
        CREATE TABLE users (id INTEGER PRIMARY KEY);

        -- DOWN
        DROP TABLE users;

Identifiers sort as plain strings, so use zero-padded sequence numbers
(001, 002) or timestamps (20250114T093000).
"""

import hashlib
import logging
import re
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from schemaledger.errors import (
    ChecksumMismatch,
    DuplicateIdentifier,
    MalformedUnit,
)

from .migration import DeclaredSafety, MigrationUnit, Phase, ScriptPhase
from .migration_sources import as_source
from .statements import parse_directives, split_statements

logger = logging.getLogger(__name__)

_IDENTIFIER = r'(?P<identifier>[0-9][0-9A-Za-z.\-]*)'
_DESCRIPTION = r'(?P<description>[A-Za-z0-9][A-Za-z0-9_\-]*)'

_PHASE_ORDER = {Phase.BUILD: 0, Phase.COPY: 1, Phase.SWAP: 2}


class MigrationStore:
    """
    Loads and validates migration units.

    Responsibilities:
    - Match filenames against the naming convention
    - Pair forward/reverse scripts and parse directives
    - Split scripts into statements
    - Compute and verify checksums

    Does NOT execute migrations (see MigrationExecutor).

    Example:
        >>> store = MigrationStore()
        >>> units = await store.load(Path('db/migrations'))
        >>> print(units)
        [<MigrationUnit(001, create_users)>, <MigrationUnit(002, add_email_index)>]
    """

    # Paired layout: 001__create_users.up.sql / 001__create_users.down.sql
    PAIRED_PATTERN = re.compile(
        rf'^{_IDENTIFIER}__{_DESCRIPTION}\.(?P<direction>up|down)\.(?P<ext>[A-Za-z0-9]+)$'
    )

    # Single-file layout: 001__create_users.sql with -- UP / -- DOWN markers
    SINGLE_PATTERN = re.compile(
        rf'^{_IDENTIFIER}__{_DESCRIPTION}\.(?P<ext>[A-Za-z0-9]+)$'
    )

    # Section markers in single-file migrations
    UP_MARKER = '-- UP'
    DOWN_MARKER = '-- DOWN'

    async def load(
        self,
        source,
        known_checksums: Optional[Mapping[str, str]] = None
    ) -> List[MigrationUnit]:
        """
        Read a source and parse the full ordered catalog.

        Args:
            source: MigrationSource or path to a migrations directory
            known_checksums: {identifier: checksum} of units already
                applied somewhere; mismatches raise ChecksumMismatch

        Returns:
            List of MigrationUnit sorted by identifier ascending

        Raises:
            MalformedUnit: If a script is empty or a directive is invalid
            DuplicateIdentifier: If two units share an identifier
            UnparsableScript: If statement boundaries cannot be determined
            ChecksumMismatch: If a known unit's content changed
        """
        source = as_source(source)
        files = await source.read_files()
        return self.parse(files, source.describe(), known_checksums)

    def parse(
        self,
        files: Iterable[Tuple[str, str]],
        location: str = 'bundle',
        known_checksums: Optional[Mapping[str, str]] = None
    ) -> List[MigrationUnit]:
        """
        Parse (filename, content) pairs into the ordered catalog.

        Raises the same errors as load().
        """
        grouped: Dict[str, Dict[str, Tuple[str, str, str]]] = {}

        for filename, content in files:
            paired = self.PAIRED_PATTERN.match(filename)
            single = None if paired else self.SINGLE_PATTERN.match(filename)

            if not paired and not single:
                logger.warning(
                    "Skipping file that is not a migration: %s", filename
                )
                continue

            match = paired or single
            identifier = match.group('identifier')
            description = match.group('description')
            slots = grouped.setdefault(identifier, {})

            if paired:
                direction = match.group('direction')
                keys = [direction]
            else:
                direction = 'single'
                keys = ['up', 'down']

            for key in keys:
                if key in slots:
                    raise DuplicateIdentifier(
                        f"Duplicate migration identifier {identifier}: "
                        f"{slots[key][0]} and {filename}",
                        identifier=identifier,
                    )
            for key in keys:
                slots[key] = (filename, content, description)
            if direction == 'single':
                slots['single'] = (filename, content, description)

        units = [
            self._build_unit(identifier, slots)
            for identifier, slots in grouped.items()
        ]
        units.sort()

        logger.debug(
            "Loaded %d migration units from %s", len(units), location
        )

        if known_checksums:
            self.verify_checksums(units, known_checksums)

        return units

    def _build_unit(
        self,
        identifier: str,
        slots: Dict[str, Tuple[str, str, str]]
    ) -> MigrationUnit:
        """Assemble one unit from its forward/reverse files."""
        if 'single' in slots:
            filename, content, description = slots['single']
            forward, reverse = self._parse_sections(content, filename)
            source_name = filename
        else:
            if 'up' not in slots:
                filename = slots['down'][0]
                raise MalformedUnit(
                    f"Reverse script {filename} has no forward script",
                    identifier=identifier,
                )
            filename, forward, description = slots['up']
            source_name = filename
            reverse = None
            if 'down' in slots:
                down_name, reverse, down_description = slots['down']
                source_name = f"{filename}, {down_name}"
                if down_description != description:
                    logger.warning(
                        "Migration %s: reverse script %s has a different "
                        "description than %s", identifier, down_name, filename
                    )
                if not reverse.strip():
                    raise MalformedUnit(
                        f"Migration {identifier} has an empty reverse script "
                        f"({down_name})",
                        identifier=identifier,
                    )

        forward_statements = tuple(split_statements(forward, filename))
        if not forward_statements:
            raise MalformedUnit(
                f"Migration {identifier} has empty forward script ({filename})",
                identifier=identifier,
            )

        reverse_statements = None
        if reverse is not None:
            reverse_statements = tuple(split_statements(reverse, filename))
            if not reverse_statements:
                raise MalformedUnit(
                    f"Migration {identifier} reverse script has no statements",
                    identifier=identifier,
                )

        declared_safety, phases = self._parse_directives(
            identifier, forward, filename
        )

        return MigrationUnit(
            identifier=identifier,
            description=description,
            forward_script=forward,
            reverse_script=reverse,
            checksum=self.compute_checksum(forward),
            forward_statements=forward_statements,
            reverse_statements=reverse_statements,
            declared_safety=declared_safety,
            phases=phases,
            source_name=source_name,
        )

    def _parse_sections(
        self,
        content: str,
        filename: str
    ) -> Tuple[str, Optional[str]]:
        """
        Parse UP and DOWN sections from single-file migration content.

        A file without markers is treated as a forward-only script.

        Args:
            content: Full file content
            filename: Filename for error messages

        Returns:
            Tuple of (forward_sql, reverse_sql or None)

        Raises:
            MalformedUnit: If markers are out of order or DOWN is empty
        """
        lines = content.split('\n')

        up_start = None
        down_start = None

        # Find section markers (case-insensitive)
        for i, line in enumerate(lines):
            line_stripped = line.strip().upper()
            if line_stripped == self.UP_MARKER:
                up_start = i + 1
            elif line_stripped == self.DOWN_MARKER:
                down_start = i + 1

        if up_start is None and down_start is None:
            return content.strip(), None

        if up_start is None:
            raise MalformedUnit(
                f"Migration {filename} has '{self.DOWN_MARKER}' but no "
                f"'{self.UP_MARKER}' marker"
            )

        if down_start is None:
            return '\n'.join(lines[up_start:]).strip(), None

        if up_start >= down_start:
            raise MalformedUnit(
                f"Migration {filename} has '{self.DOWN_MARKER}' before "
                f"'{self.UP_MARKER}' (UP at line {up_start}, "
                f"DOWN at line {down_start})"
            )

        up_sql = '\n'.join(lines[up_start:down_start - 1]).strip()
        down_sql = '\n'.join(lines[down_start:]).strip()

        if not down_sql:
            raise MalformedUnit(
                f"Migration {filename} has empty DOWN section"
            )

        return up_sql, down_sql

    def _parse_directives(
        self,
        identifier: str,
        forward: str,
        filename: str
    ) -> Tuple[Optional[DeclaredSafety], Tuple[ScriptPhase, ...]]:
        """
        Read '-- safety:' and '-- phase:' directives from a forward script.

        Phase directives split the script into build/copy/swap chunks for
        the shadow copy-and-swap strategy. They must appear in that order
        and the script must not contain statements before the first one.
        """
        declared_safety = None
        markers: List[Tuple[int, Phase]] = []

        for lineno, name, value in parse_directives(forward):
            if name == 'safety':
                if declared_safety is not None:
                    raise MalformedUnit(
                        f"Migration {identifier} declares safety more than once",
                        identifier=identifier,
                    )
                try:
                    declared_safety = DeclaredSafety(value)
                except ValueError:
                    raise MalformedUnit(
                        f"Migration {identifier} has unknown safety class "
                        f"'{value}' (expected one of: "
                        f"{', '.join(s.value for s in DeclaredSafety)})",
                        identifier=identifier,
                    ) from None
            else:
                try:
                    markers.append((lineno, Phase(value)))
                except ValueError:
                    raise MalformedUnit(
                        f"Migration {identifier} has unknown phase '{value}'",
                        identifier=identifier,
                    ) from None

        if not markers:
            return declared_safety, ()

        orders = [_PHASE_ORDER[phase] for _, phase in markers]
        if orders != sorted(set(orders)):
            raise MalformedUnit(
                f"Migration {identifier} phases must appear once each in "
                f"build, copy, swap order",
                identifier=identifier,
            )

        lines = forward.split('\n')
        if split_statements('\n'.join(lines[:markers[0][0]]), filename):
            raise MalformedUnit(
                f"Migration {identifier} has statements before the first "
                f"phase directive",
                identifier=identifier,
            )

        phases = []
        for index, (lineno, phase) in enumerate(markers):
            end = markers[index + 1][0] if index + 1 < len(markers) else len(lines)
            statements = tuple(
                split_statements('\n'.join(lines[lineno + 1:end]), filename)
            )
            if not statements:
                raise MalformedUnit(
                    f"Migration {identifier} phase '{phase.value}' is empty",
                    identifier=identifier,
                )
            phases.append(ScriptPhase(phase=phase, statements=statements))

        return declared_safety, tuple(phases)

    def compute_checksum(self, content: str) -> str:
        """
        Compute SHA-256 checksum of a forward script.

        Used to detect edits after a unit has been applied. Comments and
        whitespace are significant.

        Args:
            content: Forward script text

        Returns:
            Hexadecimal SHA-256 hash (64 characters)
        """
        return hashlib.sha256(content.encode('utf-8')).hexdigest()

    def verify_checksums(
        self,
        units: Iterable[MigrationUnit],
        known_checksums: Mapping[str, str]
    ) -> None:
        """
        Verify unit checksums match previously recorded ones.

        Raises:
            ChecksumMismatch: For the first unit (in identifier order)
                whose content changed
        """
        for unit in units:
            expected = known_checksums.get(unit.identifier)
            if expected is not None and unit.checksum != expected:
                raise ChecksumMismatch(unit.identifier, expected, unit.checksum)

    def find_unit(
        self,
        units: Iterable[MigrationUnit],
        identifier: str
    ) -> Optional[MigrationUnit]:
        """Find a unit by identifier in a loaded catalog."""
        for unit in units:
            if unit.identifier == identifier:
                return unit
        return None
