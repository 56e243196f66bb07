"""
SQL statement splitting and script directives.

Splits migration scripts into individual statements. Drivers such as
SQLite only execute one statement at a time, and the executor records
progress per statement for non-transactional backends.

The splitter understands:
- single-quoted strings and double-quoted identifiers ('' and "" escapes)
- '--' line comments and '/* */' block comments
- PostgreSQL dollar-quoted bodies ($$ ... $$, $tag$ ... $tag$)
- CREATE TRIGGER bodies (BEGIN ... END, with CASE ... END nested inside)

A script that ends inside any of these constructs cannot be split
reliably and raises UnparsableScript.
"""

import re
from typing import List, Optional, Tuple

from schemaledger.errors import UnparsableScript

# Directive comment lines, e.g. "-- safety: additive" or "-- phase: copy"
DIRECTIVE_PATTERN = re.compile(
    r'^\s*--\s*(safety|phase)\s*:\s*([A-Za-z_-]+)\s*$',
    re.IGNORECASE,
)

_DOLLAR_TAG = re.compile(r'\$([A-Za-z_][A-Za-z0-9_]*)?\$')
_WORD = re.compile(r'[A-Za-z_][A-Za-z0-9_$]*')

# CREATE [TEMP | TEMPORARY | CONSTRAINT | OR REPLACE] TRIGGER
_TRIGGER_HEADER_WORDS = 4


def split_statements(sql: str, source: Optional[str] = None) -> List[str]:
    """Split SQL string into individual statements.

    Comments are kept inside the statement they precede or follow, but a
    chunk consisting only of comments and whitespace is dropped.

    Args:
        sql: SQL string with one or more statements
        source: Name used in error messages (filename or identifier)

    Returns:
        List of individual SQL statements (without trailing semicolons)

    Raises:
        UnparsableScript: If the script ends inside a quoted construct,
            block comment or trigger body

    Example:
        >>> split_statements("CREATE TABLE a (x TEXT DEFAULT ';'); DROP TABLE b;")
        ["CREATE TABLE a (x TEXT DEFAULT ';')", 'DROP TABLE b']
    """
    statements = []
    current: List[str] = []
    words: List[str] = []
    trigger = False
    depth = 0
    i = 0
    length = len(sql)

    while i < length:
        char = sql[i]

        if char in ("'", '"'):
            end = _find_quote_end(sql, i, char)
            if end < 0:
                kind = 'string literal' if char == "'" else 'quoted identifier'
                raise UnparsableScript(
                    f"Unterminated {kind} starting at offset {i} "
                    f"in {source or 'script'}",
                    identifier=source,
                )
            current.append(sql[i:end])
            i = end
            continue

        if sql.startswith('--', i):
            end = sql.find('\n', i)
            end = length if end < 0 else end
            current.append(sql[i:end])
            i = end
            continue

        if sql.startswith('/*', i):
            end = sql.find('*/', i + 2)
            if end < 0:
                raise UnparsableScript(
                    f"Unterminated block comment starting at offset {i} "
                    f"in {source or 'script'}",
                    identifier=source,
                )
            current.append(sql[i:end + 2])
            i = end + 2
            continue

        if char == '$':
            match = _DOLLAR_TAG.match(sql, i)
            if match:
                tag = match.group(0)
                end = sql.find(tag, match.end())
                if end < 0:
                    raise UnparsableScript(
                        f"Unterminated dollar-quoted body {tag} starting at "
                        f"offset {i} in {source or 'script'}",
                        identifier=source,
                    )
                current.append(sql[i:end + len(tag)])
                i = end + len(tag)
                continue

        word = _WORD.match(sql, i)
        if word:
            text = word.group(0)
            upper = text.upper()
            if len(words) <= _TRIGGER_HEADER_WORDS:
                words.append(upper)
                trigger = words[0] == 'CREATE' and 'TRIGGER' in words[1:]
            if trigger:
                if upper in ('BEGIN', 'CASE'):
                    depth += 1
                elif upper == 'END' and depth > 0:
                    depth -= 1
            current.append(text)
            i = word.end()
            continue

        # Semicolons inside a trigger body belong to the trigger
        if char == ';' and depth == 0:
            _flush(current, statements)
            current = []
            words = []
            trigger = False
            i += 1
            continue

        current.append(char)
        i += 1

    if depth > 0:
        raise UnparsableScript(
            f"Unterminated BEGIN ... END block in {source or 'script'}",
            identifier=source,
        )
    _flush(current, statements)
    return statements


def _find_quote_end(sql: str, start: int, quote: str) -> int:
    """Return the index just past the closing quote, or -1."""
    i = start + 1
    while i < len(sql):
        if sql[i] == quote:
            # Doubled quote is an escape
            if i + 1 < len(sql) and sql[i + 1] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    return -1


def _flush(current: List[str], statements: List[str]) -> None:
    stmt = ''.join(current).strip()
    if stmt and not is_comment_only(stmt):
        statements.append(stmt)


def is_comment_only(sql: str) -> bool:
    """Return True if sql contains nothing but comments and whitespace."""
    stripped = re.sub(r'/\*.*?\*/', '', sql, flags=re.DOTALL)
    stripped = re.sub(r'--[^\n]*', '', stripped)
    return not stripped.strip()


def strip_comments(sql: str) -> str:
    """Remove SQL comments (used for pattern matching, not execution)."""
    sql = re.sub(r'/\*.*?\*/', '', sql, flags=re.DOTALL)
    return re.sub(r'--[^\n]*', '', sql)


def parse_directives(sql: str) -> List[Tuple[int, str, str]]:
    """
    Find directive comment lines in a script.

    Returns:
        List of (line_number, name, value) tuples, lower-cased,
        line numbers starting at 0
    """
    directives = []
    for lineno, line in enumerate(sql.split('\n')):
        match = DIRECTIVE_PATTERN.match(line)
        if match:
            directives.append(
                (lineno, match.group(1).lower(), match.group(2).lower())
            )
    return directives
