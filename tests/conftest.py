"""
Global pytest configuration and fixtures for schemaledger tests

Provides:
- Migration directory writer
- File-backed SQLite execution backends and a competing writer
- Engine factory wired to a test environment
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Dict

import pytest

from schemaledger.migrations import (
    LockCoordinator,
    MigrationEngine,
    MigrationExecutor,
    MigrationStore,
    VersionLedger,
)
from schemaledger.storage import SQLAlchemyBackend


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom settings"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")


# ============================================================================
# Migration catalogs
# ============================================================================

CREATE_USERS = (
    "CREATE TABLE users (\n"
    "    id INTEGER PRIMARY KEY,\n"
    "    email TEXT NOT NULL\n"
    ");\n"
)
DROP_USERS = "DROP TABLE users;\n"
ADD_EMAIL_INDEX = "CREATE INDEX idx_users_email ON users (email);\n"
DROP_EMAIL_INDEX = "DROP INDEX idx_users_email;\n"


@pytest.fixture
def migrations_dir(tmp_path) -> Path:
    path = tmp_path / "migrations"
    path.mkdir()
    return path


@pytest.fixture
def write_migrations(migrations_dir):
    """
    Write migration files into the test migrations directory.

    Example:
        write_migrations({'001__create_users.up.sql': CREATE_USERS})
    """
    def _write(files: Dict[str, str]) -> Path:
        for name, content in files.items():
            (migrations_dir / name).write_text(content, encoding='utf-8')
        return migrations_dir

    return _write


@pytest.fixture
def make_unit():
    """
    Build a MigrationUnit through the store's parser.

    Example:
        unit = make_unit('003', 'ALTER TABLE users DROP COLUMN email;')
    """
    store = MigrationStore()

    def _make(identifier: str, forward: str, reverse: str = None,
              description: str = 'change'):
        files = {f'{identifier}__{description}.up.sql': forward}
        if reverse is not None:
            files[f'{identifier}__{description}.down.sql'] = reverse
        return store.parse(sorted(files.items()))[0]

    return _make


@pytest.fixture
def base_catalog(write_migrations):
    """001 create_users and 002 add_email_index, both reversible."""
    return write_migrations({
        '001__create_users.up.sql': CREATE_USERS,
        '001__create_users.down.sql': DROP_USERS,
        '002__add_email_index.up.sql': ADD_EMAIL_INDEX,
        '002__add_email_index.down.sql': DROP_EMAIL_INDEX,
    })


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "target.db"


@pytest.fixture
async def backend(db_path):
    """Connected SQLAlchemy backend over a temporary SQLite file.

    Yields:
        SQLAlchemyBackend: Connected backend (closed after the test)
    """
    backend = SQLAlchemyBackend(str(db_path))
    await backend.connect()

    yield backend

    try:
        await backend.close()
    except Exception as e:
        logging.warning('Error closing test backend: %s', e)


@pytest.fixture
async def second_backend(db_path):
    """Independent connection to the same database (a second executor)."""
    backend = SQLAlchemyBackend(str(db_path))
    await backend.connect()

    yield backend

    await backend.close()


@pytest.fixture
def exclusive_lock(db_path):
    """
    Hold SQLite's exclusive lock from a plain sqlite3 connection.

    Stands in for another session writing to the database. Statements
    from the backends wait out the driver's busy timeout (5s), then
    fail with SQLITE_BUSY.

    Example:
        with exclusive_lock():
            result = await engine.apply()
    """
    @contextmanager
    def _hold():
        conn = sqlite3.connect(str(db_path), isolation_level=None)
        try:
            conn.execute('BEGIN EXCLUSIVE')
            yield conn
            conn.execute('ROLLBACK')
        finally:
            conn.close()

    return _hold


@pytest.fixture
def make_engine(migrations_dir):
    """
    Build an engine for the 'test' environment.

    Keyword arguments override lock_timeout, ttl, actor, batch_size,
    max_batches, clock and source.
    """
    def _make(backend, *, lock_timeout=0.0, ttl=300.0, actor='tester@ci',
              batch_size=1000, max_batches=100000, clock=None, source=None):
        ledger = VersionLedger(backend)
        lock_kwargs = {'ttl': ttl, 'poll_interval': 0.05}
        if clock is not None:
            lock_kwargs['clock'] = clock
        lock = LockCoordinator(backend, table='schema_migrations_lock', **lock_kwargs)
        executor = MigrationExecutor(backend, ledger, actor=actor,
                                     batch_size=batch_size,
                                     max_batches=max_batches)
        return MigrationEngine(
            backend,
            source if source is not None else migrations_dir,
            'test',
            ledger=ledger,
            lock=lock,
            executor=executor,
            actor=actor,
            lock_timeout=lock_timeout,
        )

    return _make
