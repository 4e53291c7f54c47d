"""
Unit tests for retention policy management (dbackup/backup/retention.py).

Tests duration parsing, cutoff semantics on both storage kinds and
RetentionManager summaries.
"""

import dataclasses
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from freezegun import freeze_time

from dbackup.backup.retention import (
    InvalidRetentionSpec,
    RetentionManager,
    enforce_retention,
    enforce_retention_policies,
    parse_duration,
)
from dbackup.backup.storage import LocalStorage, S3Storage
from dbackup.models import BackupConfig, StorageReference


class TestParseDuration:
    """Test duration string parsing."""

    @pytest.mark.parametrize('text,seconds', [
        ('30s', 30),
        ('45sec', 45),
        ('1second', 1),
        ('5m', 300),
        ('5min', 300),
        ('2minutes', 120),
        ('1h', 3600),
        ('3hours', 10800),
        ('1d', 86400),
        ('7days', 604800),
        ('2w', 1209600),
        ('1week', 604800),
        ('6mon', 6 * 2592000),
        ('1month', 2592000),
        ('1y', 31536000),
        ('2years', 2 * 31536000),
        ('0d', 0),
        (' 7D ', 604800),
    ])
    def test_valid_durations(self, text, seconds):
        """Test every supported unit and its aliases."""
        assert parse_duration(text) == timedelta(seconds=seconds)

    @pytest.mark.parametrize('text,message', [
        ('', 'cannot be empty'),
        ('   ', 'cannot be empty'),
        ('d', 'Invalid duration format'),
        ('-1d', 'Invalid duration format'),
        ('10', 'Missing time unit'),
        ('10x', "Unknown time unit 'x'"),
        ('1.5d', "Unknown time unit"),
        ('1 d', "Unknown time unit"),
    ])
    def test_malformed_durations(self, text, message):
        """Test malformed strings raise InvalidRetentionSpec."""
        with pytest.raises(InvalidRetentionSpec, match=message):
            parse_duration(text)

    def test_none_is_rejected(self):
        """Test a missing value is treated like an empty string."""
        with pytest.raises(InvalidRetentionSpec):
            parse_duration(None)

    def test_is_a_value_error(self):
        """Test callers can catch retention errors as ValueError."""
        assert issubclass(InvalidRetentionSpec, ValueError)

    def test_too_large_duration(self):
        """Test a duration beyond what timedelta holds is rejected."""
        with pytest.raises(InvalidRetentionSpec, match="Duration too large"):
            parse_duration('1000000000d')


class TestLocalRetention:
    """Test cutoff semantics for local storage."""

    NOW = datetime(2024, 1, 15, 12, 0, 0)

    def test_strictly_older_files_are_deleted(self, tmp_path, set_mtime):
        """Test files older than the cutoff go, files at or after it stay."""
        storage = LocalStorage(str(tmp_path / 'backups'))
        cutoff = int(self.NOW.timestamp()) - 86400

        old = storage.base_path / 'old.dump.gz'
        boundary = storage.base_path / 'boundary.dump.gz'
        recent = storage.base_path / 'recent.dump.gz'
        for path, mtime in ((old, cutoff - 1), (boundary, cutoff), (recent, cutoff + 3600)):
            path.write_bytes(b'x')
            set_mtime(path, mtime)

        deleted = enforce_retention(storage, '1d', now=self.NOW)

        assert deleted == 1
        assert not old.exists()
        assert boundary.exists()
        assert recent.exists()

    def test_subdirectories_are_ignored(self, tmp_path, set_mtime):
        """Test directories are never treated as backups."""
        storage = LocalStorage(str(tmp_path / 'backups'))
        subdir = storage.base_path / 'archive'
        subdir.mkdir()
        (subdir / 'nested.dump.gz').write_bytes(b'x')
        set_mtime(subdir, 0)
        set_mtime(subdir / 'nested.dump.gz', 0)

        assert enforce_retention(storage, '1s', now=self.NOW) == 0
        assert (subdir / 'nested.dump.gz').exists()

    def test_empty_directory(self, tmp_path):
        """Test an empty storage directory."""
        storage = LocalStorage(str(tmp_path / 'backups'))

        assert enforce_retention(storage, '7d', now=self.NOW) == 0

    def test_malformed_spec_deletes_nothing(self, tmp_path, set_mtime):
        """Test a malformed duration fails before any deletion."""
        storage = LocalStorage(str(tmp_path / 'backups'))
        path = storage.base_path / 'old.dump.gz'
        path.write_bytes(b'x')
        set_mtime(path, 0)

        with pytest.raises(InvalidRetentionSpec):
            enforce_retention(storage, '7', now=self.NOW)

        assert path.exists()

    @freeze_time("2024-01-15 12:00:00")
    def test_defaults_to_current_time(self, tmp_path, set_mtime):
        """Test now defaults to the current time."""
        storage = LocalStorage(str(tmp_path / 'backups'))
        path = storage.base_path / 'old.dump.gz'
        path.write_bytes(b'x')
        set_mtime(path, int(datetime(2024, 1, 1).timestamp()))

        assert enforce_retention(storage, '1w') == 1

    def test_vanished_file_is_not_counted(self, tmp_path):
        """Test a file removed between listing and deletion is not reported as deleted."""
        storage = LocalStorage(str(tmp_path / 'backups'))
        gone = {'path': storage.base_path / 'gone.dump.gz', 'modified': 0, 'size': 0}

        with patch.object(LocalStorage, 'list_files', return_value=[gone]):
            assert enforce_retention(storage, '1d', now=self.NOW) == 0


class TestS3Retention:
    """Test cutoff semantics for S3 storage."""

    def test_old_objects_are_deleted(self, mock_s3):
        """Test objects older than the cutoff below the prefix are deleted."""
        mock_s3.put_object(Bucket='test-bucket', Key='p/a.dump.gz', Body=b'a')
        mock_s3.put_object(Bucket='test-bucket', Key='p/b.dump.gz', Body=b'b')
        mock_s3.put_object(Bucket='test-bucket', Key='other/c.dump.gz', Body=b'c')

        storage = S3Storage('test-bucket', 'us-east-1', prefix='p/')
        # Objects were written just now, so they are a day old tomorrow
        tomorrow = datetime.now(timezone.utc) + timedelta(days=1)

        deleted = enforce_retention(storage, '1h', now=tomorrow)

        assert deleted == 2
        keys = [obj['Key'] for obj in mock_s3.list_objects_v2(Bucket='test-bucket').get('Contents', [])]
        assert keys == ['other/c.dump.gz']

    def test_recent_objects_are_kept(self, mock_s3):
        """Test objects younger than the retention survive."""
        mock_s3.put_object(Bucket='test-bucket', Key='p/a.dump.gz', Body=b'a')

        storage = S3Storage('test-bucket', 'us-east-1', prefix='p/')

        assert enforce_retention(storage, '7d') == 0
        assert mock_s3.list_objects_v2(Bucket='test-bucket')['KeyCount'] == 1

    def test_listing_is_paginated(self, mock_s3):
        """Test more objects than one listing page returns."""
        for i in range(1005):
            mock_s3.put_object(Bucket='test-bucket', Key=f'p/{i:04d}.dump.gz', Body=b'')

        storage = S3Storage('test-bucket', 'us-east-1', prefix='p/')
        tomorrow = datetime.now(timezone.utc) + timedelta(days=1)

        assert enforce_retention(storage, '1h', now=tomorrow) == 1005

    def test_huge_retention_deletes_nothing(self, mock_s3):
        """Test a retention reaching before year 1 keeps every object."""
        mock_s3.put_object(Bucket='test-bucket', Key='p/a.dump.gz', Body=b'a')

        storage = S3Storage('test-bucket', 'us-east-1', prefix='p/')

        assert enforce_retention(storage, '9999y') == 0
        assert mock_s3.list_objects_v2(Bucket='test-bucket')['KeyCount'] == 1


class TestRetentionManager:
    """Test RetentionManager basic functionality."""

    def test_retention_manager_initialization(self, backup_config):
        """Test RetentionManager initializes correctly."""
        manager = RetentionManager(backup_config)

        assert manager.config is backup_config
        assert manager.logs == []

    def test_enforce_job_policy_no_retention(self, backup_config, pg_job):
        """Test a job with no retention policy configured."""
        job = dataclasses.replace(pg_job, retention=None)

        assert RetentionManager(backup_config).enforce_job_policy(job) == 0

    def test_enforce_job_policy_uses_given_storage(self, backup_config, pg_job):
        """Test an already built storage backend is reused."""
        storage = MagicMock()
        storage.cleanup_older_than.return_value = 3

        deleted = RetentionManager(backup_config).enforce_job_policy(pg_job, storage=storage)

        assert deleted == 3
        storage.cleanup_older_than.assert_called_once_with(timedelta(days=7), now=None)

    def test_enforce_all_policies(self, pg_job, tmp_path, set_mtime):
        """Test a pass over all jobs with a retention value."""
        no_retention = dataclasses.replace(pg_job, name='keep-forever', retention=None)
        config = BackupConfig(backups=[pg_job, no_retention])

        backups = tmp_path / 'backups'
        backups.mkdir()
        old = backups / 'bk_20200101_000000.dump.gz'
        old.write_bytes(b'x')
        set_mtime(old, 0)

        summary = RetentionManager(config).enforce_all_policies()

        assert summary['jobs_processed'] == 1
        assert summary['deleted'] == 1
        assert summary['errors'] == []
        assert any('Retention enforcement complete' in line for line in summary['logs'])
        assert not old.exists()

    def test_failing_job_does_not_stop_the_pass(self, pg_job, tmp_path):
        """Test one broken job is reported while the others still run."""
        broken = dataclasses.replace(pg_job, name='broken', storage=StorageReference(ref='nowhere'))
        bad_spec = dataclasses.replace(pg_job, name='bad-spec', retention='soon')
        config = BackupConfig(backups=[broken, bad_spec, pg_job])

        summary = RetentionManager(config).enforce_all_policies()

        assert summary['jobs_processed'] == 1
        assert len(summary['errors']) == 2
        assert 'broken' in summary['errors'][0]
        assert 'bad-spec' in summary['errors'][1]

    def test_enforce_retention_policies(self, backup_config):
        """Test the module-level entry point returns a summary."""
        summary = enforce_retention_policies(backup_config)

        assert summary['jobs_processed'] == 1
        assert summary['deleted'] == 0
