"""
Unit tests for storage resolution (dbackup/backup/resolver.py).
"""

import dataclasses

import pytest

from dbackup.backup.resolver import (
    ConfigResolutionError,
    MissingStorageConfig,
    NoTemplatesDefined,
    StorageNotFound,
    resolve_storage,
)
from dbackup.models import StorageConfig, StorageDriver, StorageReference


@pytest.fixture
def templates():
    return {
        's3_main': StorageConfig(
            driver=StorageDriver.S3,
            bucket='b',
            region='r',
            prefix='p/',
            filename_prefix=''
        ),
        'local_main': StorageConfig(
            driver=StorageDriver.LOCAL,
            path='/var/backups',
            filename_prefix='local_'
        ),
    }


class TestResolveStorage:
    """Test resolve_storage()."""

    def test_inline_storage(self, pg_job, local_storage_config):
        """Test an inline storage is returned unchanged."""
        assert resolve_storage(pg_job, None) == local_storage_config

    def test_reference_with_filename_prefix_override(self, pg_job, templates):
        """Test overriding only the filename prefix keeps the template's key prefix."""
        job = dataclasses.replace(
            pg_job,
            storage=StorageReference(ref='s3_main', filename_prefix='x_')
        )

        resolved = resolve_storage(job, templates)

        assert resolved.driver == StorageDriver.S3
        assert resolved.bucket == 'b'
        assert resolved.region == 'r'
        assert resolved.prefix == 'p/'
        assert resolved.filename_prefix == 'x_'

    def test_reference_with_prefix_override(self, pg_job, templates):
        """Test overriding the key prefix."""
        job = dataclasses.replace(
            pg_job,
            storage=StorageReference(ref='s3_main', prefix='other/')
        )

        resolved = resolve_storage(job, templates)

        assert resolved.prefix == 'other/'
        assert resolved.filename_prefix == ''

    def test_reference_without_overrides(self, pg_job, templates):
        """Test a plain reference returns the template as is."""
        job = dataclasses.replace(pg_job, storage=StorageReference(ref='local_main'))

        assert resolve_storage(job, templates) == templates['local_main']

    def test_template_is_not_modified(self, pg_job, templates):
        """Test overrides never leak into the shared template."""
        job = dataclasses.replace(
            pg_job,
            storage=StorageReference(ref='s3_main', prefix='other/', filename_prefix='x_')
        )

        resolve_storage(job, templates)

        assert templates['s3_main'].prefix == 'p/'
        assert templates['s3_main'].filename_prefix == ''

    def test_resolution_is_repeatable(self, pg_job, templates):
        """Test resolving twice gives equal results."""
        job = dataclasses.replace(
            pg_job,
            storage=StorageReference(ref='s3_main', filename_prefix='x_')
        )

        assert resolve_storage(job, templates) == resolve_storage(job, templates)

    def test_missing_storage(self, pg_job, templates):
        """Test a job with no storage at all."""
        job = dataclasses.replace(pg_job, storage=None)

        with pytest.raises(MissingStorageConfig):
            resolve_storage(job, templates)

    @pytest.mark.parametrize('empty', [None, {}])
    def test_no_templates_defined(self, pg_job, empty):
        """Test a reference when no templates are declared."""
        job = dataclasses.replace(pg_job, storage=StorageReference(ref='s3_main'))

        with pytest.raises(NoTemplatesDefined):
            resolve_storage(job, empty)

    def test_unknown_template(self, pg_job, templates):
        """Test a reference to a template that does not exist."""
        job = dataclasses.replace(pg_job, storage=StorageReference(ref='nowhere'))

        with pytest.raises(StorageNotFound, match="nowhere"):
            resolve_storage(job, templates)

    def test_errors_share_a_base_class(self):
        """Test every resolution error can be caught as ConfigResolutionError."""
        for error in (MissingStorageConfig, NoTemplatesDefined, StorageNotFound):
            assert issubclass(error, ConfigResolutionError)
