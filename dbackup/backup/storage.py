"""
Storage handlers for dump artifacts.

Supports:
- S3Storage: Upload to AWS S3 or any S3-compatible service
- LocalStorage: Move into a local directory

Both expose deliver() for a finished artifact and cleanup_older_than() for
retention.
"""

import errno
import logging
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from dbackup.models import StorageConfig, StorageDriver

logger = logging.getLogger(__name__)

DEFAULT_S3_PREFIX = 'backups/'

# Files above this size go through a multipart upload
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class InvalidStorageConfig(StorageError):
    pass


class StorageUnreachable(StorageError):
    pass


class DeliveryError(StorageError):
    pass


class UploadFailed(DeliveryError):
    pass


class CleanupError(StorageError):
    """A single item could not be removed during a retention pass."""
    pass


class S3Storage:
    """
    Handler for uploading artifacts to S3.

    Objects are stored under {prefix}{filename}.
    """

    def __init__(
        self,
        bucket_name: str,
        region: str,
        prefix: Optional[str] = None,
        endpoint: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None
    ):
        """
        Initialize S3 storage handler and verify the bucket is reachable.

        Args:
            bucket_name: S3 bucket name
            region: AWS region
            prefix: Key prefix (default: backups/)
            endpoint: Custom endpoint URL for S3-compatible services
            access_key: Static access key ID (optional, ambient credentials otherwise)
            secret_key: Static secret access key (optional)

        Raises:
            StorageUnreachable: If the bucket cannot be accessed
        """
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = DEFAULT_S3_PREFIX if prefix is None else prefix
        self.endpoint = endpoint

        client_kwargs = {'region_name': region}

        if endpoint:
            # S3-compatible services generally need path-style URLs
            logger.debug(f"Using custom S3 endpoint with path-style addressing: {endpoint}")
            client_kwargs['endpoint_url'] = endpoint
            client_kwargs['config'] = BotoConfig(s3={'addressing_style': 'path'})

        if access_key and secret_key:
            logger.debug("Using provided AWS credentials")
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except Exception as e:
            raise StorageUnreachable(f"Failed to initialize S3 client: {e}")

        self.test_connection()
        logger.info(f"Connected to S3 bucket: {bucket_name} (region={region})")

    @classmethod
    def from_config(cls, config: StorageConfig) -> 'S3Storage':
        if not config.bucket:
            raise InvalidStorageConfig("S3 storage requires 'bucket' configuration")
        if not config.region:
            raise InvalidStorageConfig("S3 storage requires 'region' configuration")

        return cls(
            bucket_name=config.bucket,
            region=config.region,
            prefix=config.prefix,
            endpoint=config.endpoint,
            access_key=config.access_key_id,
            secret_key=config.secret_access_key
        )

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            StorageUnreachable: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchBucket'):
                raise StorageUnreachable(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageUnreachable(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageUnreachable(f"S3 connection test failed ({error_code}): {e}")
        except Exception as e:
            raise StorageUnreachable(f"Failed to connect to S3: {e}")

    def location(self, key: str) -> str:
        return f"s3://{self.bucket_name}/{key}"

    def deliver(self, artifact_path: str, filename: str) -> str:
        """
        Upload an artifact to S3.

        Args:
            artifact_path: Path to the local artifact
            filename: Object name below the prefix

        Returns:
            s3://{bucket}/{prefix}{filename}

        Raises:
            UploadFailed: If upload fails
        """
        if not os.path.exists(artifact_path):
            raise UploadFailed(f"Local file not found: {artifact_path}")

        key = f"{self.prefix}{filename}"
        logger.info(f"Uploading backup to {self.location(key)}")

        try:
            file_size = os.path.getsize(artifact_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(artifact_path, key)
            else:
                self._simple_upload(artifact_path, key)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise UploadFailed(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise UploadFailed(f"S3 upload failed: {e}")
        except Exception as e:
            raise UploadFailed(f"Failed to upload to S3: {e}")

        logger.info(f"Successfully uploaded to {self.location(key)}")
        return self.location(key)

    def _simple_upload(self, artifact_path: str, key: str):
        with open(artifact_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f
            )

    def _multipart_upload(self, artifact_path: str, key: str):
        """
        Upload a large file in parts.

        The upload is aborted on any error, so a failed delivery never leaves
        a truncated object behind.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(artifact_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload for {key}: {abort_error}")
            raise

    def delete(self, key: str):
        """
        Delete an object from S3.

        Raises:
            CleanupError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=key
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise CleanupError(f"S3 delete failed ({error_code}): {e}")
        except Exception as e:
            raise CleanupError(f"Failed to delete from S3: {e}")

    def list_objects(self):
        """
        Iterate over objects below the prefix, one page at a time.

        Yields:
            Dicts with 'Key', 'LastModified' and 'Size'

        Raises:
            StorageError: If listing fails
        """
        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self.prefix):
                for obj in page.get('Contents', []):
                    yield {
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    }

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def cleanup_older_than(self, max_age: timedelta, now: Optional[datetime] = None) -> int:
        """
        Delete objects whose LastModified is strictly older than now - max_age.

        Args:
            max_age: Retention duration
            now: Reference time (default: current UTC time)

        Returns:
            Number of objects deleted

        Raises:
            StorageError: If listing fails; individual delete failures are logged and skipped
        """
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.astimezone()
        try:
            cutoff = now - max_age
        except OverflowError:
            cutoff = datetime.min.replace(tzinfo=timezone.utc)

        logger.info(f"Applying retention to {self.location(self.prefix)} (cutoff: {cutoff.isoformat()})")

        deleted_count = 0
        for obj in self.list_objects():
            last_modified = obj['LastModified']
            if last_modified.tzinfo is None:
                last_modified = last_modified.replace(tzinfo=timezone.utc)

            if last_modified < cutoff:
                try:
                    self.delete(obj['Key'])
                    deleted_count += 1
                    logger.info(f"Deleted old S3 object: {self.location(obj['Key'])}")
                except CleanupError as e:
                    logger.warning(f"Failed to delete S3 object {obj['Key']}: {e}")

        logger.info(f"S3 retention cleanup removed {deleted_count} object(s)")
        return deleted_count


class LocalStorage:
    """
    Handler for storing artifacts in a local directory.

    Files land directly in {base_path}/{filename}.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Directory for backups (created if missing)
        """
        self.base_path = Path(base_path).expanduser().resolve()

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory {self.base_path}: {e}")

    @classmethod
    def from_config(cls, config: StorageConfig) -> 'LocalStorage':
        if not config.path:
            raise InvalidStorageConfig("Local storage requires 'path' configuration")
        return cls(config.path)

    def deliver(self, artifact_path: str, filename: str) -> str:
        """
        Move an artifact from the scratch directory into the storage directory.

        The move is an atomic rename. When scratch and storage live on
        different filesystems the file is copied next to its destination
        first and then renamed, so a partial file is never visible under the
        final name.

        Returns:
            Absolute path of the delivered file

        Raises:
            DeliveryError: If the move fails
        """
        if not os.path.exists(artifact_path):
            raise DeliveryError(f"Artifact not found: {artifact_path}")

        dest_path = self.base_path / filename

        try:
            os.replace(artifact_path, dest_path)
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise DeliveryError(f"Failed to move {artifact_path} to {dest_path}: {e}")
            self._copy_across_devices(artifact_path, dest_path)

        logger.info(f"Backup file available at: {dest_path}")
        return str(dest_path)

    def _copy_across_devices(self, artifact_path: str, dest_path: Path):
        fd, tmp_path = tempfile.mkstemp(prefix='.incoming_', dir=str(self.base_path))
        os.close(fd)

        try:
            shutil.copy2(artifact_path, tmp_path)
            os.replace(tmp_path, dest_path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise DeliveryError(f"Failed to copy {artifact_path} to {dest_path}: {e}")

        try:
            os.remove(artifact_path)
        except OSError as e:
            logger.warning(f"Delivered {dest_path} but failed to remove {artifact_path}: {e}")

    def delete(self, path: Path) -> bool:
        """
        Delete a file from local storage.

        Returns:
            False if the file was already gone

        Raises:
            CleanupError: If deletion fails
        """
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except PermissionError as e:
            raise CleanupError(f"Permission denied deleting {path}: {e}")
        except OSError as e:
            raise CleanupError(f"Failed to delete local file {path}: {e}")

        return True

    def list_files(self) -> list:
        """
        List backup files directly inside base_path (subdirectories are skipped).

        Returns:
            List of dicts with 'path', 'modified' (POSIX timestamp) and 'size'
        """
        files = []

        try:
            with os.scandir(self.base_path) as entries:
                for entry in entries:
                    if entry.is_dir(follow_symlinks=False):
                        continue
                    stat = entry.stat(follow_symlinks=False)
                    files.append({
                        'path': Path(entry.path),
                        'modified': stat.st_mtime,
                        'size': stat.st_size
                    })
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

        return files

    def cleanup_older_than(self, max_age: timedelta, now: Optional[datetime] = None) -> int:
        """
        Delete files whose mtime is strictly older than now - max_age.

        Args:
            max_age: Retention duration
            now: Reference time (default: current time)

        Returns:
            Number of files deleted
        """
        now = now or datetime.now()
        cutoff = now.timestamp() - max_age.total_seconds()

        logger.info(f"Applying retention to local storage: {self.base_path}")

        deleted_count = 0
        for file_info in self.list_files():
            if file_info['modified'] < cutoff:
                try:
                    if not self.delete(file_info['path']):
                        logger.debug(f"Backup already removed: {file_info['path']}")
                        continue
                    deleted_count += 1
                    logger.info(f"Deleted old backup: {file_info['path']}")
                except CleanupError as e:
                    logger.warning(f"Failed to delete backup {file_info['path']}: {e}")

        logger.info(f"Local retention cleanup removed {deleted_count} backup(s)")
        return deleted_count


def create_storage(config: StorageConfig):
    """
    Factory function to create the storage backend for a resolved config.

    Returns:
        LocalStorage or S3Storage instance

    Raises:
        InvalidStorageConfig: If a required field for the driver is missing
        StorageUnreachable: If an S3 bucket cannot be accessed
    """
    if config.driver == StorageDriver.LOCAL:
        return LocalStorage.from_config(config)
    elif config.driver == StorageDriver.S3:
        return S3Storage.from_config(config)
    else:
        raise InvalidStorageConfig(f"Unsupported storage driver: {config.driver}")
