"""
Integration tests for VersionLedger.

Tests cover:
- Lazy table creation
- Recording, idempotency guard and retry after failure
- Rollback marking
- Append-only history
"""

from datetime import datetime, timedelta, timezone

import pytest

from schemaledger.errors import ConfigError, LedgerWriteConflict
from schemaledger.migrations import LedgerStatus, VersionLedger, VersionLedgerEntry


pytestmark = pytest.mark.integration


class FakeClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self):
        self.now = datetime(2025, 11, 24, 10, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


def _entry(identifier, applied_at, **overrides):
    values = dict(
        identifier=identifier,
        checksum=f'{identifier}' * 16,
        applied_at=applied_at,
        applied_by='deploy@ci',
        duration_ms=7,
        description=f'unit_{identifier}',
    )
    values.update(overrides)
    return VersionLedgerEntry(**values)


@pytest.fixture
async def ledger(backend):
    ledger = VersionLedger(backend, clock=FakeClock())
    await ledger.ensure_tables()
    return ledger


class TestTables:

    def test_rejects_unsafe_table_name(self):
        with pytest.raises(ConfigError):
            VersionLedger(None, table='migrations; DROP TABLE users')

    async def test_exists(self, backend):
        ledger = VersionLedger(backend)

        assert not await ledger.exists()
        await ledger.ensure_tables()
        await ledger.ensure_tables()
        assert await ledger.exists()
        assert await backend.table_exists('schema_migrations_history')

    async def test_custom_table(self, backend):
        ledger = VersionLedger(backend, table='app_versions')
        await ledger.ensure_tables()

        assert await backend.table_exists('app_versions')
        assert await backend.table_exists('app_versions_history')


class TestRecord:

    async def test_record_and_read(self, ledger):
        clock = ledger.clock
        await ledger.record(_entry('002', clock()))
        await ledger.record(_entry('001', clock()))

        entries = await ledger.entries()

        # Application order, not identifier order
        assert [e.identifier for e in entries] == ['002', '001']
        assert entries[0].description == 'unit_002'
        assert entries[0].applied_at.tzinfo is not None
        assert await ledger.applied_identifiers() == {'001', '002'}
        assert (await ledger.applied_checksums())['001'] == '001' * 16

    async def test_get(self, ledger):
        await ledger.record(_entry('001', ledger.clock()))

        assert (await ledger.get('001')).status == LedgerStatus.SUCCEEDED
        assert await ledger.get('999') is None

    async def test_succeeded_entry_is_never_overwritten(self, ledger):
        await ledger.record(_entry('001', ledger.clock()))

        with pytest.raises(LedgerWriteConflict) as exc_info:
            await ledger.record(_entry('001', ledger.clock(), applied_by='other'))

        assert exc_info.value.identifier == '001'
        assert (await ledger.get('001')).applied_by == 'deploy@ci'
        assert len(await ledger.history('001')) == 1

    async def test_failed_then_retried(self, ledger):
        failed = await ledger.mark_failed(
            '003', 'no such table: widgets',
            checksum='a' * 64, applied_by='deploy@ci', duration_ms=3,
            description='bad_statement',
        )
        assert failed.status == LedgerStatus.FAILED

        entry = await ledger.get('003')
        assert entry.status == LedgerStatus.FAILED
        assert entry.error_message == 'no such table: widgets'
        assert await ledger.applied_identifiers() == set()

        await ledger.record(_entry('003', ledger.clock(), checksum='b' * 64))

        entry = await ledger.get('003')
        assert entry.succeeded
        assert entry.checksum == 'b' * 64
        assert entry.error_message is None

        statuses = [h.status for h in await ledger.history('003')]
        assert statuses == [LedgerStatus.FAILED, LedgerStatus.SUCCEEDED]

    async def test_mark_failed_on_succeeded_unit(self, ledger):
        await ledger.record(_entry('001', ledger.clock()))

        with pytest.raises(LedgerWriteConflict):
            await ledger.mark_failed('001', 'late failure',
                                     checksum='0' * 64, applied_by='x')


class TestRollbackMarking:

    async def test_mark_rolled_back(self, ledger):
        await ledger.record(_entry('001', ledger.clock()))

        await ledger.mark_rolled_back('001', checksum='001' * 16,
                                      applied_by='ops', duration_ms=2)

        entry = await ledger.get('001')
        assert entry.status == LedgerStatus.ROLLED_BACK
        assert entry.applied_by == 'ops'
        assert await ledger.applied_identifiers() == set()

    async def test_cannot_roll_back_unapplied_unit(self, ledger):
        with pytest.raises(LedgerWriteConflict):
            await ledger.mark_rolled_back('001', checksum='0' * 64, applied_by='ops')

    async def test_reapply_after_rollback(self, ledger):
        await ledger.record(_entry('001', ledger.clock()))
        await ledger.mark_rolled_back('001', checksum='001' * 16, applied_by='ops')

        await ledger.record(_entry('001', ledger.clock()))

        assert (await ledger.get('001')).succeeded

    async def test_rollback_failure_only_in_history(self, ledger):
        await ledger.record(_entry('001', ledger.clock()))

        await ledger.record_rollback_failure('001', 'cannot drop',
                                             checksum='001' * 16, applied_by='ops')

        assert (await ledger.get('001')).succeeded
        last = (await ledger.history('001'))[-1]
        assert last.status == LedgerStatus.ROLLBACK_FAILED
        assert last.error_message == 'cannot drop'


class TestHistory:

    async def test_sequence_is_gapless(self, ledger):
        await ledger.record(_entry('001', ledger.clock()))
        await ledger.mark_failed('002', 'boom', checksum='0' * 64, applied_by='ci')
        await ledger.record(_entry('002', ledger.clock()))
        await ledger.mark_rolled_back('002', checksum='002' * 16, applied_by='ci')

        history = await ledger.history()

        assert [h.sequence for h in history] == [1, 2, 3, 4]
        assert [(h.identifier, h.status.value) for h in history] == [
            ('001', 'succeeded'),
            ('002', 'failed'),
            ('002', 'succeeded'),
            ('002', 'rolled_back'),
        ]
        assert history[1].recorded_by == 'ci'
        assert history[0].recorded_at < history[-1].recorded_at
