"""
Integration tests for rollback runs.

Tests cover:
- Reverse-order reverts down to a target
- Wholesale rejection when a unit lacks a reverse script
- Revert failures and re-application
"""

import pytest

from schemaledger.errors import NoReverseScript, UnknownIdentifier
from schemaledger.migrations import LedgerStatus, RunState, VersionLedger


pytestmark = pytest.mark.integration


def _unit_files(n, reversible=True, down=None):
    files = {f'00{n}__create_t{n}.up.sql': f"CREATE TABLE t{n} (id INTEGER);\n"}
    if reversible:
        files[f'00{n}__create_t{n}.down.sql'] = down or f"DROP TABLE t{n};\n"
    return files


@pytest.fixture
def five_units(write_migrations):
    files = {}
    for n in range(1, 6):
        files.update(_unit_files(n))
    return write_migrations(files)


async def _statuses(backend):
    return {e.identifier: e.status for e in await VersionLedger(backend).entries()}


class TestRollback:

    async def test_rollback_to_target(self, backend, five_units, make_engine):
        engine = make_engine(backend)
        await engine.apply()

        result = await engine.rollback('001')

        assert result.state == RunState.COMPLETED
        assert result.operation == 'rollback'
        assert result.planned == ['005', '004', '003', '002']
        assert result.completed_identifiers == ['005', '004', '003', '002']
        assert all(r.direction == 'reverse' for r in result.results)

        statuses = await _statuses(backend)
        assert statuses['001'] == LedgerStatus.SUCCEEDED
        assert {statuses[i] for i in ('002', '003', '004', '005')} == {
            LedgerStatus.ROLLED_BACK
        }
        assert await backend.table_exists('t1')
        for n in range(2, 6):
            assert not await backend.table_exists(f't{n}')

        report = await engine.status()
        assert report.pending == ['002', '003', '004', '005']
        assert await engine.lock.current('test') is None

    async def test_reapply_after_rollback(self, backend, five_units, make_engine):
        engine = make_engine(backend)
        await engine.apply()
        await engine.rollback('003')

        result = await engine.apply()

        assert result.planned == ['004', '005']
        assert await backend.table_exists('t5')
        statuses = await _statuses(backend)
        assert set(statuses.values()) == {LedgerStatus.SUCCEEDED}

    async def test_nothing_above_target(self, backend, five_units, make_engine):
        engine = make_engine(backend)
        await engine.apply()

        result = await engine.rollback('005')

        assert result.state == RunState.COMPLETED
        assert result.planned == []
        assert result.transitions == [RunState.PLANNING, RunState.COMPLETED]

    async def test_dry_run(self, backend, five_units, make_engine):
        engine = make_engine(backend)
        await engine.apply()

        result = await engine.rollback('003', dry_run=True)

        assert result.state == RunState.COMPLETED
        assert result.planned == ['005', '004']
        assert await backend.table_exists('t5')
        assert set((await _statuses(backend)).values()) == {LedgerStatus.SUCCEEDED}


class TestRejectedRollback:

    async def test_missing_reverse_rejects_whole_plan(self, backend, write_migrations,
                                                      make_engine):
        files = {}
        for n in range(1, 5):
            files.update(_unit_files(n))
        files.update(_unit_files(5, reversible=False))
        write_migrations(files)
        engine = make_engine(backend)
        await engine.apply()

        result = await engine.rollback('003')

        assert result.state == RunState.FAILED
        assert result.transitions == [RunState.PLANNING, RunState.FAILED]
        assert isinstance(result.error, NoReverseScript)
        assert result.error.identifiers == ['005']

        statuses = await _statuses(backend)
        assert statuses['004'] == LedgerStatus.SUCCEEDED
        assert statuses['005'] == LedgerStatus.SUCCEEDED
        assert await backend.table_exists('t4')

    async def test_unknown_target(self, backend, five_units, make_engine):
        engine = make_engine(backend)
        await engine.apply()

        result = await engine.rollback('999')

        assert result.state == RunState.FAILED
        assert isinstance(result.error, UnknownIdentifier)
        assert result.failed_identifier == '999'


class TestRevertFailure:

    async def test_failed_revert_stops_run(self, backend, write_migrations, make_engine):
        files = {}
        for n in (1, 2, 4, 5):
            files.update(_unit_files(n))
        files.update(_unit_files(3, down="DROP TABLE no_such_table;\n"))
        write_migrations(files)
        engine = make_engine(backend)
        await engine.apply()

        result = await engine.rollback('001')

        assert result.state == RunState.FAILED
        assert result.failed_identifier == '003'
        assert result.completed_identifiers == ['005', '004']

        statuses = await _statuses(backend)
        assert statuses['005'] == LedgerStatus.ROLLED_BACK
        assert statuses['004'] == LedgerStatus.ROLLED_BACK
        assert statuses['003'] == LedgerStatus.SUCCEEDED
        assert statuses['002'] == LedgerStatus.SUCCEEDED
        assert await backend.table_exists('t3')

        last = (await engine.ledger.history('003'))[-1]
        assert last.status == LedgerStatus.ROLLBACK_FAILED
        assert 'no_such_table' in last.error_message
