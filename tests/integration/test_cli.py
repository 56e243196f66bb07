"""
Integration tests for the `migrate` command line interface.

Each test writes a config file pointing at a temporary SQLite database
and runs main() the way the console script does.
"""

import asyncio
import logging

import pytest

from schemaledger.cli import EXIT_CODES, build_parser, main, make_source
from schemaledger.migrations import DirectorySource, HttpSource, LockCoordinator, RunState
from schemaledger.storage import SQLAlchemyBackend


pytestmark = pytest.mark.integration


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    monkeypatch.delenv('MIGRATE_CONFIG', raising=False)
    monkeypatch.setenv('MIGRATE_ACTOR', 'cli-tester')
    yield
    # main() attaches a handler on every call
    package_logger = logging.getLogger('schemaledger')
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture
def config_file(tmp_path, db_path):
    path = tmp_path / 'migrate.yaml'
    path.write_text(
        "migrations: migrations\n"
        "lock:\n"
        "  timeout: 0\n"
        "environments:\n"
        "  test:\n"
        f"    url: 'sqlite+aiosqlite:///{db_path.as_posix()}'\n"
    )
    return path


def _migrate(config_file, *args):
    return main(['--config', str(config_file), *args])


class TestCommands:

    def test_status_on_fresh_database(self, config_file, base_catalog, capsys):
        assert _migrate(config_file, 'status', 'test') == 0

        out = capsys.readouterr().out
        assert 'Environment: test' in out
        assert 'Applied (0):' in out
        assert 'Pending (2):' in out

    def test_apply_then_status(self, config_file, base_catalog, capsys):
        assert _migrate(config_file, 'apply', 'test') == 0
        out = capsys.readouterr().out
        assert 'apply test: Completed (2 of 2 applied)' in out

        assert _migrate(config_file, 'status', 'test') == 0
        out = capsys.readouterr().out
        assert 'Applied (2):' in out
        assert 'by cli-tester' in out
        assert 'Pending (0):' in out

    def test_dry_run(self, config_file, base_catalog, capsys):
        assert _migrate(config_file, 'apply', 'test', '--dry-run') == 0

        out = capsys.readouterr().out
        assert 'apply test (dry run): Completed' in out
        assert 'would be applied: 001' in out

        _migrate(config_file, 'status', 'test')
        assert 'Pending (2):' in capsys.readouterr().out

    def test_rollback(self, config_file, base_catalog, capsys):
        _migrate(config_file, 'apply', 'test')
        capsys.readouterr()

        assert _migrate(config_file, 'rollback', 'test', '--to', '001') == 0

        out = capsys.readouterr().out
        assert 'rollback test: Completed (1 of 1 reverted)' in out

    def test_failed_run_exits_1(self, config_file, write_migrations, capsys):
        write_migrations({'001__broken.up.sql': "INSERT INTO nowhere VALUES (1);\n"})

        assert _migrate(config_file, 'apply', 'test') == 1
        assert 'nowhere' in capsys.readouterr().out

        # status still reads the environment
        assert _migrate(config_file, 'status', 'test') == 0
        assert 'Failed or rolled back (1):' in capsys.readouterr().out

    def test_lock_denied_exits_2(self, config_file, base_catalog, db_path, capsys):
        async def hold_lease():
            backend = SQLAlchemyBackend(str(db_path))
            await backend.connect()
            try:
                return await LockCoordinator(backend).acquire('test', timeout=0)
            finally:
                await backend.close()

        lease = asyncio.run(hold_lease())

        assert _migrate(config_file, 'apply', 'test') == 2
        assert 'LockDenied' in capsys.readouterr().out

        _migrate(config_file, 'status', 'test')
        assert f'Lease held by: {lease.holder}' in capsys.readouterr().out

    def test_migrations_override(self, config_file, tmp_path, capsys):
        other = tmp_path / 'other'
        other.mkdir()
        (other / '001__init.up.sql').write_text("CREATE TABLE t (id INTEGER);\n")

        assert _migrate(config_file, '--migrations', str(other), 'apply', 'test') == 0
        assert '(1 of 1 applied)' in capsys.readouterr().out


class TestErrors:

    def test_unknown_environment(self, config_file, base_catalog, capsys):
        assert _migrate(config_file, 'status', 'staging') == 1
        assert "Unknown environment 'staging'" in capsys.readouterr().err

    def test_missing_config_file(self, tmp_path, capsys):
        assert main(['--config', str(tmp_path / 'nope.yaml'), 'status', 'test']) == 1
        assert 'Config file not found' in capsys.readouterr().err

    def test_environment_from_variable(self, tmp_path, db_path, base_catalog,
                                       monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv('MIGRATE_CI_URL', f'sqlite+aiosqlite:///{db_path.as_posix()}')

        assert main(['--migrations', str(tmp_path / 'migrations'), 'apply', 'ci']) == 0
        assert 'apply ci: Completed' in capsys.readouterr().out

    def test_status_reports_unreachable_database(self, tmp_path, base_catalog, capsys):
        config = tmp_path / 'unreachable.yaml'
        missing = tmp_path / 'no-such-dir' / 'target.db'
        config.write_text(
            "migrations: migrations\n"
            "environments:\n"
            "  test:\n"
            f"    url: 'sqlite+aiosqlite:///{missing.as_posix()}'\n"
        )

        assert _migrate(config, 'status', 'test') == 0
        out = capsys.readouterr().out
        assert 'Environment: test' in out
        assert 'Problem:' in out

        assert _migrate(config, 'apply', 'test') == 1
        assert 'Error:' in capsys.readouterr().err

    def test_status_reports_busy_database(self, config_file, base_catalog,
                                          exclusive_lock, capsys):
        with exclusive_lock():
            assert _migrate(config_file, 'status', 'test') == 0

        out = capsys.readouterr().out
        assert 'Problem:' in out
        assert 'SQLITE_BUSY' in out

    def test_rollback_requires_target(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(['rollback', 'test'])


def test_exit_codes():
    assert EXIT_CODES == {
        RunState.COMPLETED: 0,
        RunState.FAILED: 1,
        RunState.LOCK_DENIED: 2,
        RunState.CANCELLED: 130,
    }


def test_make_source():
    assert isinstance(make_source('https://example.com/bundle.json'), HttpSource)
    assert isinstance(make_source('db/migrations'), DirectorySource)
