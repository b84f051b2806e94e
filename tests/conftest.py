"""
Shared pytest fixtures for periodicbackup tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- A sample server root to back up
- Local and S3 (moto) backup locations
- A factory for pre-existing backups
"""

from datetime import datetime, timezone
from pathlib import Path

import pytest
import boto3
from moto import mock_aws

from periodicbackup import create_app, db as _db
from periodicbackup.config import TestingConfig
from periodicbackup.backup.backup_object import BackupObject
from periodicbackup.backup.configuration import BackupConfiguration, RetentionPolicy
from periodicbackup.backup.locations import LocalDirectory, S3Location


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches real accounts."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture(scope='function')
def app(tmp_path, monkeypatch):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite and directories under tmp_path.
    """
    data_dir = tmp_path / 'data'
    monkeypatch.setattr(TestingConfig, 'DATA_DIR', str(data_dir))
    monkeypatch.setattr(TestingConfig, 'TEMP_DIR', str(data_dir / 'temp'))
    monkeypatch.setattr(TestingConfig, 'SERVER_ROOT', str(tmp_path / 'server'))

    app = create_app('testing')
    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Database with all tables and the default settings row.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def server_root(tmp_path):
    """
    Create a server root directory to back up.

    Creates:
    - config.xml
    - settings.json
    - jobs/build/config.xml
    - data/payload.bin (not a config file)
    - logs/server.log (excluded directory)
    """
    root = tmp_path / 'server'
    (root / 'jobs' / 'build').mkdir(parents=True)
    (root / 'data').mkdir()
    (root / 'logs').mkdir()

    (root / 'config.xml').write_text('<config/>')
    (root / 'settings.json').write_text('{"threads": 4}')
    (root / 'jobs' / 'build' / 'config.xml').write_text('<job name="build"/>')
    (root / 'data' / 'payload.bin').write_bytes(b'\x00\x01' * 64)
    (root / 'logs' / 'server.log').write_text('started')

    return root


@pytest.fixture
def backup_dir(tmp_path):
    """An existing, empty directory for a LocalDirectory location."""
    directory = tmp_path / 'backups'
    directory.mkdir()
    return directory


@pytest.fixture
def local_location(backup_dir):
    return LocalDirectory(str(backup_dir), enabled=True)


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def s3_location(mock_s3, tmp_path):
    return S3Location('test-bucket', enabled=True, tmp_dir=str(tmp_path / 's3_staging'), region='us-east-1')


@pytest.fixture
def make_config(tmp_path, server_root):
    """Factory for configuration snapshots."""
    def _make(locations, cycle_quantity=0, cycle_days=0, **overrides):
        values = {
            'root_directory': str(server_root),
            'temp_directory': str(tmp_path / 'scratch'),
            'file_manager': 'config_only',
            'archive_format': 'tar.gz',
            'volume_size': 0,
            'locations': tuple(locations),
            'policy': RetentionPolicy(cycle_quantity=cycle_quantity, cycle_days=cycle_days),
        }
        values.update(overrides)
        return BackupConfiguration(**values)
    return _make


@pytest.fixture
def backup_factory():
    """
    Write a backup (archives + manifest) into a local directory.

    The archives are plain placeholder files; use the executor for real ones.
    """
    def _make(directory, timestamp, parts=2):
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        base = BackupObject(timestamp, (), 'config_only').file_name_base
        names = [f"{base}_part{n}.tar.gz" for n in range(1, parts + 1)]
        for name in names:
            (Path(directory) / name).write_bytes(f"archive {name}".encode())
        backup = BackupObject(timestamp, tuple(names), 'config_only')
        backup.write_manifest(directory)
        return backup
    return _make


@pytest.fixture
def fixed_timestamps():
    """Three ascending backup timestamps."""
    return [
        datetime(2024, 1, 1, 2, 0, 0, tzinfo=timezone.utc),
        datetime(2024, 1, 2, 2, 0, 0, tzinfo=timezone.utc),
        datetime(2024, 1, 3, 2, 0, 0, tzinfo=timezone.utc),
    ]
