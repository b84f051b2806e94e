"""
Unit tests for restore (periodicbackup/backup/restore.py).

Backups are produced with the real executor and restored into the same
server root.
"""

import json
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from periodicbackup.backup.errors import RunInProgressError, TransferError
from periodicbackup.backup.executor import BackupExecutor
from periodicbackup.backup.locations import LocalDirectory
from periodicbackup.backup.restore import RestoreExecutor, execute_restore, launch_restore
from periodicbackup.models import BackupRun, RunLease


NOW = datetime(2024, 1, 5, 2, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def stored_backup(make_config, local_location, server_root):
    """A config-only backup in two volumes stored in the local location."""
    config = make_config([local_location], volume_size=2)
    result = BackupExecutor(config, now=NOW).execute()
    assert result.status == 'success'

    (server_root / 'config.xml').write_text('<broken/>')
    (server_root / 'settings.json').unlink()
    return config, result.backup


class TestRestoreExecutor:
    """Test RestoreExecutor class."""

    def test_restore_puts_files_back(self, stored_backup, server_root):
        config, backup = stored_backup

        result = RestoreExecutor(backup, config).execute()

        assert result.status == 'success'
        assert result.archives == sorted(backup.archive_file_names)
        assert result.restored_files == ['config.xml', 'jobs/build/config.xml', 'settings.json']
        assert (server_root / 'config.xml').read_text() == '<config/>'
        assert json.loads((server_root / 'settings.json').read_text()) == {'threads': 4}

    def test_restore_leaves_unrelated_files(self, stored_backup, server_root):
        config, backup = stored_backup
        (server_root / 'added.xml').write_text('<added/>')

        RestoreExecutor(backup, config).execute()

        assert (server_root / 'added.xml').exists()
        assert (server_root / 'data' / 'payload.bin').exists()

    def test_archives_merged_across_locations(self, stored_backup, tmp_path, backup_dir, server_root):
        """Each location holding one volume is enough to restore the whole backup."""
        config, backup = stored_backup
        other = tmp_path / 'other'
        other.mkdir()
        part1, part2 = backup.archive_file_names
        (backup_dir / part2).rename(other / part2)

        snapshot = replace(config, locations=(LocalDirectory(str(backup_dir)), LocalDirectory(str(other))))
        result = RestoreExecutor(backup, snapshot).execute()

        assert result.status == 'success'
        assert result.archives == [part1, part2]
        assert json.loads((server_root / 'settings.json').read_text()) == {'threads': 4}

    def test_missing_volume_is_partial(self, stored_backup, backup_dir):
        config, backup = stored_backup
        (backup_dir / backup.archive_file_names[1]).unlink()

        result = RestoreExecutor(backup, config).execute()

        assert result.status == 'partial'
        assert any('Missing archives' in line for line in result.logs)

    def test_failing_location_is_partial(self, stored_backup, local_location):
        config, backup = stored_backup
        broken = MagicMock()
        broken.enabled = True
        broken.display_name = 'Broken'
        broken.retrieve.side_effect = TransferError('bucket gone')
        snapshot = replace(config, locations=(broken, local_location))

        result = RestoreExecutor(backup, snapshot).execute()

        assert result.status == 'partial'
        assert result.locations.failures[0].item == 'Broken'

    def test_no_archives_fails(self, stored_backup, backup_dir, server_root):
        config, backup = stored_backup
        for name in backup.archive_file_names:
            (backup_dir / name).unlink()

        result = RestoreExecutor(backup, config).execute()

        assert result.status == 'failed'
        assert "could be retrieved" in result.error
        assert (server_root / 'config.xml').read_text() == '<broken/>'

    def test_disabled_location_not_used(self, stored_backup, backup_dir):
        config, backup = stored_backup
        snapshot = replace(config, locations=(LocalDirectory(str(backup_dir), enabled=False),))

        result = RestoreExecutor(backup, snapshot).execute()

        assert result.status == 'failed'
        assert result.locations.skipped == [f"Local directory: {backup_dir}"]

    def test_from_s3(self, make_config, s3_location, server_root):
        config = make_config([s3_location], file_manager='full', archive_format='zip')
        backup = BackupExecutor(config, now=NOW).execute().backup
        (server_root / 'data' / 'payload.bin').write_bytes(b'')

        result = RestoreExecutor(backup, config).execute()

        assert result.status == 'success'
        assert (server_root / 'data' / 'payload.bin').read_bytes() == b'\x00\x01' * 64

    def test_scratch_directory_cleaned_up(self, stored_backup, tmp_path):
        config, backup = stored_backup

        RestoreExecutor(backup, config).execute()

        assert list((tmp_path / 'scratch').iterdir()) == []


class TestExecuteRestore:
    """Test run recording around a restore."""

    def test_records_new_run(self, db, stored_backup):
        config, backup = stored_backup

        run = execute_restore(backup, config)

        assert run.kind == 'restore'
        assert run.status == 'success'
        assert run.backup_id == backup.backup_id
        assert run.message == f"Backup {backup.backup_id} restored"

    def test_completes_existing_run(self, db, stored_backup):
        config, backup = stored_backup
        started = BackupRun.start('restore', backup_id=backup.backup_id)

        run = execute_restore(backup, config, run_id=started.id)

        assert run.id == started.id
        assert BackupRun.query.count() == 1
        assert run.completed_at is not None


class TestLaunchRestore:
    """Test background restore supervision."""

    def test_returns_future_with_run_id(self, app, db, stored_backup):
        config, backup = stored_backup
        finished = MagicMock()
        finished.id = 42

        with patch('periodicbackup.backup.restore.execute_restore', return_value=finished) as mock_restore:
            future = launch_restore(app, backup, config)
            assert future.result(timeout=10) == 42

        run = db.session.get(BackupRun, future.run_id)
        assert run.kind == 'restore'
        assert run.status == 'running'
        mock_restore.assert_called_once_with(backup, config, run_id=future.run_id)

    def test_crash_surfaces_on_future(self, app, db, stored_backup):
        config, backup = stored_backup

        with patch('periodicbackup.backup.restore.execute_restore', side_effect=RuntimeError('boom')):
            future = launch_restore(app, backup, config)
            with pytest.raises(RuntimeError, match='boom'):
                future.result(timeout=10)

        run = db.session.get(BackupRun, future.run_id, populate_existing=True)
        assert run.status == 'failed'
        assert run.error_message == 'boom'
        assert run.completed_at is not None
        assert RunLease.current() is None

    def test_lease_released_when_done(self, app, db, stored_backup):
        config, backup = stored_backup

        held = []

        def restore(*args, **kwargs):
            held.append(RunLease.current().kind)
            return MagicMock(id=1)

        with patch('periodicbackup.backup.restore.execute_restore', side_effect=restore):
            future = launch_restore(app, backup, config)
            future.result(timeout=10)

        assert held == ['restore']
        assert RunLease.current() is None

    def test_refused_while_another_run_holds_lease(self, app, db, stored_backup):
        config, backup = stored_backup
        token = RunLease.acquire('backup')

        with patch('periodicbackup.backup.restore.execute_restore') as mock_restore:
            with pytest.raises(RunInProgressError, match='backup run is in progress'):
                launch_restore(app, backup, config)

        mock_restore.assert_not_called()
        assert BackupRun.query.filter_by(kind='restore').count() == 0
        RunLease.release(token)
        assert RunLease.current() is None
