"""
Unit tests for migration data models and the error taxonomy.
"""

from datetime import datetime

import pytest

from schemaledger.errors import (
    ChecksumMismatch,
    ExecutionError,
    LockTimeout,
    MigrationError,
    MissingPredecessor,
    NoReverseScript,
    StaleLeaseReclaimed,
)
from schemaledger.migrations import LedgerStatus, MigrationUnit, Phase, VersionLedgerEntry


class TestMigrationUnit:

    def test_requires_identifier(self):
        with pytest.raises(ValueError, match="identifier"):
            MigrationUnit('', 'x', 'SELECT 1;', None, '0' * 64, ('SELECT 1',))

    def test_requires_statements(self):
        with pytest.raises(ValueError, match="empty forward script"):
            MigrationUnit('001', 'x', '-- nothing', None, '0' * 64, ())

    def test_sorting_is_plain_string_order(self, make_unit):
        units = [
            make_unit('010', "SELECT 10;"),
            make_unit('002', "SELECT 2;"),
            make_unit('001', "SELECT 1;"),
        ]

        assert [u.identifier for u in sorted(units)] == ['001', '002', '010']

    def test_reverse_and_phases(self, make_unit):
        unit = make_unit('001', "CREATE TABLE t (id INTEGER);", "DROP TABLE t;",
                         description='create_t')

        assert unit.has_reverse
        assert not unit.shadow_capable
        assert unit.phase_statements(Phase.COPY) == ()
        assert repr(unit) == '<MigrationUnit(001, create_t)>'

    def test_units_are_immutable(self, make_unit):
        unit = make_unit('001', "SELECT 1;")

        with pytest.raises(AttributeError):
            unit.checksum = 'tampered'


class TestVersionLedgerEntry:

    def _entry(self, **overrides):
        values = dict(
            identifier='001',
            checksum='a' * 64,
            applied_at=datetime(2025, 11, 24, 10, 0, 0),
            applied_by='deploy@ci',
            duration_ms=12,
        )
        values.update(overrides)
        return VersionLedgerEntry(**values)

    def test_status_from_string(self):
        entry = self._entry(status='failed')

        assert entry.status == LedgerStatus.FAILED
        assert not entry.succeeded
        assert repr(entry) == '<VersionLedgerEntry(001, failed)>'

    def test_rollback_failed_is_history_only(self):
        with pytest.raises(ValueError, match="rollback_failed"):
            self._entry(status=LedgerStatus.ROLLBACK_FAILED)

    def test_negative_duration(self):
        with pytest.raises(ValueError, match="duration_ms"):
            self._entry(duration_ms=-1)


class TestErrors:

    def test_base_error(self):
        error = MigrationError("boom", identifier='003', details={'k': 'v'})

        assert str(error) == '[MIGRATION_ERROR] boom'
        assert error.to_dict() == {
            'code': 'MIGRATION_ERROR',
            'message': 'boom',
            'identifier': '003',
            'details': {'k': 'v'},
        }

    def test_checksum_mismatch(self):
        error = ChecksumMismatch('002', 'a' * 64, 'b' * 64)

        assert error.identifier == '002'
        assert 'aaaaaaaaaaaa...' in error.message
        assert error.details['actual'] == 'b' * 64

    def test_missing_predecessor(self):
        error = MissingPredecessor('004', '003', 'failed entry is not in the catalog')

        assert error.missing == '003'
        assert error.code == 'MISSING_PREDECESSOR'

    def test_no_reverse_script_lists_all(self):
        error = NoReverseScript(['005', '003'])

        assert error.identifiers == ['005', '003']
        assert error.identifier == '005'
        assert '005, 003' in error.message

    def test_lock_timeout(self):
        error = LockTimeout('production', 0.0, holder='alice@host')

        assert 'held by alice@host' in error.message
        assert error.details['environment'] == 'production'

    def test_execution_error_code_from_driver(self):
        error = ExecutionError("no such table: x", code='SQLITE_ERROR',
                               statement='SELECT * FROM x')

        assert error.code == 'SQLITE_ERROR'
        assert ExecutionError.code == 'EXECUTION_ERROR'
        assert error.to_dict()['details'] == {'statement': 'SELECT * FROM x'}

    def test_stale_lease_is_a_warning(self):
        warning = StaleLeaseReclaimed('production', 'bob@host', 1700000000.0)

        assert isinstance(warning, RuntimeWarning)
        assert 'bob@host' in str(warning)

    def test_append_note_updates_str(self):
        error = ExecutionError("no such table: y", code='SQLITE_ERROR')

        error.append_note("1 statement(s) had already committed")
        error.append_note("1 statement(s) had already committed")

        assert error.message == (
            "no such table: y (1 statement(s) had already committed)"
        )
        assert str(error) == f"[SQLITE_ERROR] {error.message}"

    @pytest.mark.parametrize("code,contention", [
        ('SQLITE_BUSY', True),
        ('SQLITE_LOCKED', True),
        ('55P03', True),
        ('SQLITE_ERROR', False),
        (None, False),
    ])
    def test_execution_error_contention(self, code, contention):
        assert ExecutionError("locked", code=code).contention is contention
