"""
Unit tests for backup executor (periodicbackup/backup/executor.py).

Tests the backup workflow end to end against local directories and moto S3.
"""

import os
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from freezegun import freeze_time

from periodicbackup.backup import executor as executor_module
from periodicbackup.backup.backup_object import BackupObject
from periodicbackup.backup.errors import RunInProgressError, TransferError
from periodicbackup.backup.executor import DONE, FAILED, IDLE, BackupExecutor, execute_backup
from periodicbackup.backup.locations import LocalDirectory
from periodicbackup.models import BackupLocation, BackupRun, BackupSettings, RunLease


NOW = datetime(2024, 1, 5, 2, 0, 0, tzinfo=timezone.utc)


class TestBackupExecutor:
    """Test BackupExecutor class."""

    def test_executor_initialization(self, make_config, local_location):
        executor = BackupExecutor(make_config([local_location]), now=NOW.replace(microsecond=5))

        assert executor.timestamp == NOW
        assert executor.result.state == IDLE
        assert executor.logs == []

    def test_executor_successful_backup(self, make_config, local_location, backup_dir):
        """Test a backup stored in one local directory."""
        result = BackupExecutor(make_config([local_location]), now=NOW).execute()

        assert result.state == DONE
        assert result.status == 'success'
        assert result.backup.backup_id == 'backup_20240105_020000'
        assert sorted(os.listdir(backup_dir)) == [
            'backup_20240105_020000.pbobj',
            'backup_20240105_020000_part1.tar.gz',
        ]
        assert local_location.list_available_backups() == [result.backup]

    def test_manifest_lists_archives(self, make_config, local_location, backup_dir):
        config = make_config([local_location], volume_size=1, archive_format='zip', file_manager='full')

        result = BackupExecutor(config, now=NOW).execute()

        manifest = json.loads((backup_dir / 'backup_20240105_020000.pbobj').read_text())
        assert manifest['archive_file_names'] == list(result.backup.archive_file_names)
        assert len(manifest['archive_file_names']) == 4
        assert manifest['file_manager_id'] == 'full'
        assert manifest['archive_format'] == 'zip'

    def test_disabled_location_untouched(self, make_config, backup_dir, s3_location, mock_s3):
        """Test a disabled local directory next to an enabled bucket."""
        disabled = LocalDirectory(str(backup_dir), enabled=False)
        config = make_config([disabled, s3_location], volume_size=2)

        result = BackupExecutor(config, now=NOW).execute()

        assert result.status == 'success'
        assert os.listdir(backup_dir) == []
        keys = sorted(obj.key for obj in mock_s3.Bucket('test-bucket').objects.all())
        assert keys == [
            'backup_20240105_020000.pbobj',
            'backup_20240105_020000_part1.tar.gz',
            'backup_20240105_020000_part2.tar.gz',
        ]
        assert result.locations.skipped == [disabled.display_name]
        assert result.locations.succeeded == [s3_location.display_name]
        assert s3_location.list_available_backups() == [result.backup]
        assert result.backup.archive_file_names == (
            'backup_20240105_020000_part1.tar.gz',
            'backup_20240105_020000_part2.tar.gz',
        )

    def test_one_location_failing_is_partial(self, make_config, local_location, tmp_path):
        broken = MagicMock(spec=LocalDirectory)
        broken.enabled = True
        broken.path = str(tmp_path / 'broken')
        broken.display_name = 'Broken location'
        broken.store.side_effect = TransferError('connection reset')

        result = BackupExecutor(make_config([broken, local_location]), now=NOW).execute()

        assert result.state == DONE
        assert result.status == 'partial'
        assert result.locations.failures[0].item == 'Broken location'
        assert 'connection reset' in result.locations.failures[0].error
        assert len(local_location.list_available_backups()) == 1

    def test_no_location_stored_fails(self, make_config, tmp_path):
        missing = LocalDirectory(str(tmp_path / 'missing'))

        result = BackupExecutor(make_config([missing]), now=NOW).execute()

        assert result.state == FAILED
        assert result.status == 'failed'
        assert "not stored in any location" in result.error

    def test_no_locations_fails(self, make_config):
        result = BackupExecutor(make_config([]), now=NOW).execute()

        assert result.status == 'failed'

    def test_archive_failure(self, make_config, local_location, tmp_path, backup_dir):
        config = make_config([local_location], root_directory=str(tmp_path / 'nowhere'))

        result = BackupExecutor(config, now=NOW).execute()

        assert result.state == FAILED
        assert "Root directory does not exist" in result.error
        assert os.listdir(backup_dir) == []

    def test_invalid_archive_format(self, make_config, local_location):
        result = BackupExecutor(make_config([local_location], archive_format='rar'), now=NOW).execute()

        assert result.status == 'failed'
        assert "Invalid archive format" in result.error

    def test_local_location_inside_root_not_archived(self, make_config, server_root):
        """A backup directory under the server root is never backed up into itself."""
        inner = server_root / 'backups'
        inner.mkdir()
        location = LocalDirectory(str(inner))
        BackupExecutor(make_config([location], file_manager='full'), now=NOW).execute()

        second = BackupExecutor(
            make_config([location], file_manager='full'),
            now=NOW.replace(hour=3)
        ).execute()

        assert second.status == 'success'
        assert len(second.backup.archive_file_names) == 1
        assert len(location.list_available_backups()) == 2

    def test_scratch_directory_cleaned_up(self, make_config, local_location, tmp_path):
        BackupExecutor(make_config([local_location]), now=NOW).execute()

        assert os.listdir(tmp_path / 'scratch') == []

    def test_executor_logging(self, make_config, local_location):
        result = BackupExecutor(make_config([local_location]), now=NOW).execute()

        assert any('Starting backup backup_20240105_020000' in line for line in result.logs)
        assert any('completed' in line for line in result.logs)


class TestExecuteBackupFunction:
    """Test execute_backup function (stored configuration + run record)."""

    def _add_local_location(self, db, directory):
        db.session.add(BackupLocation(location_type='local', directory_path=str(directory)))
        db.session.commit()

    def test_execute_backup_records_run(self, db, server_root, backup_dir):
        self._add_local_location(db, backup_dir)

        run = execute_backup()

        assert run.kind == 'backup'
        assert run.status == 'success'
        assert run.backup_id.startswith('backup_')
        assert run.completed_at is not None
        assert json.loads(run.details)['succeeded'] == [f"Local directory: {backup_dir}"]
        assert BackupRun.query.count() == 1

    def test_execute_backup_runs_retention(self, db, server_root, backup_dir, backup_factory, fixed_timestamps):
        self._add_local_location(db, backup_dir)
        settings = BackupSettings.query.first()
        settings.cycle_quantity = 1
        db.session.commit()
        backup_factory(backup_dir, fixed_timestamps[0])

        run = execute_backup()

        backups = LocalDirectory(str(backup_dir)).list_available_backups()
        assert [b.backup_id for b in backups] == [run.backup_id]
        assert BackupRun.query.filter_by(kind='retention').count() == 1

    def test_execute_backup_skips_retention_when_unlimited(self, db, server_root, backup_dir):
        self._add_local_location(db, backup_dir)

        with patch('periodicbackup.backup.retention.enforce_retention') as mock_retention:
            execute_backup()

        mock_retention.assert_not_called()

    def test_failed_backup_skips_retention(self, db, server_root):
        settings = BackupSettings.query.first()
        settings.cycle_quantity = 1
        db.session.commit()

        with patch('periodicbackup.backup.retention.enforce_retention') as mock_retention:
            run = execute_backup()

        assert run.status == 'failed'
        assert run.error_message == "Backup was not stored in any location"
        mock_retention.assert_not_called()

    def test_invalid_stored_location_fails_run(self, db, server_root):
        db.session.add(BackupLocation(location_type='s3', bucket_name='bucket'))
        db.session.commit()

        run = execute_backup()

        assert run.status == 'failed'
        assert "temporary directory" in run.error_message

    def test_execute_backup_uses_given_snapshot(self, db, make_config, local_location):
        run = execute_backup(make_config([local_location]))

        assert run.status == 'success'
        assert len(local_location.list_available_backups()) == 1

    def test_refused_while_another_run_holds_lease(self, db, make_config, local_location):
        token = RunLease.acquire('restore')

        with pytest.raises(RunInProgressError, match='restore run is in progress'):
            execute_backup(make_config([local_location]))

        assert BackupRun.query.count() == 0
        assert local_location.list_available_backups() == []
        RunLease.release(token)

    def test_lease_held_during_run_and_released(self, db, make_config, local_location):
        held = []
        real_execute = BackupExecutor.execute

        def execute(self):
            held.append(RunLease.current().kind)
            return real_execute(self)

        with patch.object(BackupExecutor, 'execute', autospec=True, side_effect=execute):
            execute_backup(make_config([local_location]))

        assert held == ['backup']
        assert RunLease.current() is None

    def test_crash_marks_run_failed(self, db, make_config, local_location):
        with patch.object(BackupExecutor, 'execute', side_effect=RuntimeError('disk on fire')):
            with pytest.raises(RuntimeError):
                execute_backup(make_config([local_location]))

        run = BackupRun.query.one()
        assert run.status == 'failed'
        assert run.error_message == 'disk on fire'
        assert RunLease.current() is None

    def test_backups_in_same_second_get_distinct_names(self, db, make_config, local_location):
        config = make_config([local_location])

        with freeze_time('2024-01-05 02:00:00'):
            first = execute_backup(config)
            second = execute_backup(config)

        assert first.backup_id == 'backup_20240105_020000'
        assert second.backup_id == 'backup_20240105_020001'
        assert len(local_location.list_available_backups()) == 2


class TestLaunchBackup:
    """Test backups started on the background worker."""

    def test_runs_and_releases_lease(self, app, db, server_root, backup_dir):
        db.session.add(BackupLocation(location_type='local', directory_path=str(backup_dir)))
        db.session.commit()

        future = executor_module.launch_backup(app)
        assert future.result(timeout=30) == future.run_id

        run = db.session.get(BackupRun, future.run_id, populate_existing=True)
        assert run.status == 'success'
        assert len(LocalDirectory(str(backup_dir)).list_available_backups()) == 1
        assert RunLease.current() is None

    def test_refused_while_another_run_holds_lease(self, app, db):
        token = RunLease.acquire('delete')

        with pytest.raises(RunInProgressError):
            executor_module.launch_backup(app)

        assert BackupRun.query.count() == 0
        RunLease.release(token)

    def test_crash_closes_run(self, app, db):
        with patch.object(executor_module, '_record_backup', side_effect=RuntimeError('boom')):
            future = executor_module.launch_backup(app)
            with pytest.raises(RuntimeError, match='boom'):
                future.result(timeout=10)

        run = db.session.get(BackupRun, future.run_id, populate_existing=True)
        assert run.status == 'failed'
        assert RunLease.current() is None


def test_summary_messages():
    backup = BackupObject(NOW, ('a.tar.gz',), 'config_only')
    result = executor_module.BackupRunResult(state=DONE, backup=backup)

    assert executor_module._summary(result) == "Backup backup_20240105_020000 created"

    result.locations.add_failure('somewhere', 'boom')
    assert executor_module._summary(result) == "Backup backup_20240105_020000 stored with errors"
