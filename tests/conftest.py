"""
Shared pytest fixtures for dbackup tests.

This module provides fixtures for:
- Backup jobs and configurations
- Stub dump producers (small shell scripts standing in for pg_dump)
- Mocked S3 via moto
- Run history on a temporary SQLite database
"""

import os
import stat
import textwrap

import pytest
import boto3
from moto import mock_aws

from dbackup.history import HistoryStore
from dbackup.models import (
    BackupConfig,
    BackupJob,
    BackupMode,
    ConnectionConfig,
    DatabaseDriver,
    StorageConfig,
    StorageDriver,
)


def write_script(path, body):
    """Write an executable /bin/sh script and return its path as a string."""
    path.write_text("#!/bin/sh\n" + textwrap.dedent(body))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def make_producer(tmp_path):
    """
    Factory for stub producers.

    Usage: make_producer('printf SELECTDATA') -> path to an executable script
    """
    bin_dir = tmp_path / 'bin'
    bin_dir.mkdir(exist_ok=True)
    counter = {'n': 0}

    def factory(body, name=None):
        counter['n'] += 1
        return write_script(bin_dir / (name or f"producer_{counter['n']}"), body)

    return factory


@pytest.fixture
def stub_pg_dump(make_producer, tmp_path):
    """
    Basic-mode producer: records its argv and PGPASSWORD, prints SELECTDATA.
    """
    return make_producer(f"""\
        printf '%s\\n' "$@" > "{tmp_path}/args.txt"
        printf '%s' "$PGPASSWORD" > "{tmp_path}/password.txt"
        printf 'SELECTDATA'
        """, name='pg_dump')


@pytest.fixture
def stub_parallel_pg_dump(make_producer):
    """Directory-format producer: writes two files into the -f directory."""
    return make_producer("""\
        out=""
        while [ $# -gt 0 ]; do
          if [ "$1" = "-f" ]; then out="$2"; shift; fi
          shift
        done
        mkdir -p "$out"
        printf 'TOC' > "$out/toc.dat"
        printf 'ROWS' > "$out/3001.dat"
        """, name='pg_dump_parallel')


@pytest.fixture
def failing_pg_dump(make_producer):
    """Producer that writes some output, then fails with a diagnostic on stderr."""
    return make_producer("""\
        printf 'PARTIAL'
        echo "pg_dump: error: connection to server failed: Connection refused" >&2
        exit 1
        """, name='pg_dump_failing')


@pytest.fixture
def connection():
    return ConnectionConfig(
        host='localhost',
        port=5432,
        username='postgres',
        password='s3cret-pass',
        database='appdb'
    )


@pytest.fixture
def local_storage_config(tmp_path):
    return StorageConfig(
        driver=StorageDriver.LOCAL,
        path=str(tmp_path / 'backups'),
        filename_prefix='bk_'
    )


@pytest.fixture
def pg_job(connection, local_storage_config, stub_pg_dump):
    """A basic-mode PostgreSQL job delivering to local storage."""
    return BackupJob(
        name='nightly-pg',
        driver=DatabaseDriver.POSTGRESQL,
        connection=connection,
        storage=local_storage_config,
        mode=BackupMode.BASIC,
        schedule='0 2 * * *',
        binary_path=stub_pg_dump,
        retention='7d'
    )


@pytest.fixture
def backup_config(pg_job):
    return BackupConfig(backups=[pg_job])


@pytest.fixture
def scratch_dir(tmp_path):
    path = tmp_path / 'scratch'
    path.mkdir()
    return path


@pytest.fixture
def history(tmp_path):
    return HistoryStore(f"sqlite:///{tmp_path / 'history.db'}")


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never picks up real ones."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.client('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def s3_storage_config():
    return StorageConfig(
        driver=StorageDriver.S3,
        bucket='test-bucket',
        region='us-east-1',
        prefix='p/',
        filename_prefix='x_'
    )


@pytest.fixture
def set_mtime():
    """Set a file's access and modification time to a POSIX timestamp."""
    def setter(path, timestamp):
        os.utime(path, (timestamp, timestamp))
    return setter
