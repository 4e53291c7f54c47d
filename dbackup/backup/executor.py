"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Resolve the job's storage (no filesystem or network access before this)
2. Build the storage backend
3. Create a private scratch directory
4. Run the dump pipeline into the scratch directory
5. Deliver the artifact to storage
6. Remove the scratch directory, whatever happened before
7. Record the outcome in the run history (if configured)
"""

import logging
import os
import shutil
import tempfile
import threading
import uuid
from datetime import datetime
from typing import List, Mapping, Optional

from dbackup.history import HistoryStore, STATUS_FAILED, STATUS_SUCCESS
from dbackup.models import BackupConfig, BackupJob, BinarySettings, StorageConfig
from .compression import get_artifact_size
from .dumps import DumpCancelled, create_pipeline
from .resolver import resolve_storage
from .storage import create_storage

logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a job.
    """

    def __init__(
        self,
        job: BackupJob,
        storages: Optional[Mapping[str, StorageConfig]] = None,
        binaries: Optional[BinarySettings] = None,
        temp_dir: Optional[str] = None,
        history: Optional[HistoryStore] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        """
        Initialize backup executor.

        Args:
            job: BackupJob to execute
            storages: Shared storage templates
            binaries: Global producer executable overrides
            temp_dir: Parent directory for scratch directories (system default if None)
            history: Optional run history store
            cancel_event: Set to abort an in-flight dump
        """
        self.job = job
        self.storages = storages
        self.binaries = binaries
        self.temp_dir = temp_dir
        self.history = history
        self.cancel_event = cancel_event
        self.scratch_dir = None
        self.storage = None
        self.artifact_path = None
        self.logs = []

    def execute(self, timestamp: Optional[datetime] = None) -> str:
        """
        Execute the backup job.

        Args:
            timestamp: Time used in the artifact name (default: now, local time)

        Returns:
            Location of the delivered artifact

        Raises:
            Exception: The first error of the run, after cleanup and history update
        """
        history_record = self.history.start_run(self.job.name) if self.history else None
        self._log(f"Starting backup job: {self.job.name}")

        location = None
        file_size = None

        try:
            location, file_size = self._execute_workflow(timestamp or datetime.now())
            self._log(f"Backup completed successfully: {location}")

        except Exception as e:
            self._log(f"Backup failed: {e}", logging.ERROR)
            if history_record is not None:
                self.history.finish_run(
                    history_record,
                    STATUS_FAILED,
                    error_message=str(e),
                    logs=self.logs
                )
            raise

        finally:
            self._cleanup()

        if history_record is not None:
            self.history.finish_run(
                history_record,
                STATUS_SUCCESS,
                location=location,
                file_size_bytes=file_size,
                logs=self.logs
            )

        return location

    def _execute_workflow(self, timestamp: datetime):
        """Execute the main backup workflow steps."""
        # Step 1: Resolve storage
        storage_config = resolve_storage(self.job, self.storages)
        self._log(f"Storage resolved (driver: {storage_config.driver.value})")

        # Step 2: Build the storage backend, S3 checks bucket access here
        self.storage = create_storage(storage_config)

        # Step 3: Create scratch directory
        if self.temp_dir:
            os.makedirs(self.temp_dir, exist_ok=True)
        self.scratch_dir = tempfile.mkdtemp(
            prefix=f'dbackup_{uuid.uuid4().hex[:12]}_',
            dir=self.temp_dir
        )
        self._log(f"Scratch directory: {self.scratch_dir}")

        # Step 4: Dump
        pipeline = create_pipeline(self.job, self.binaries)
        self._log(f"Running {self.job.mode.value} dump with {pipeline.executable}")
        self.artifact_path, filename = pipeline.run(
            self.job.connection,
            self.scratch_dir,
            storage_config.filename_prefix,
            timestamp,
            cancel_event=self.cancel_event
        )
        file_size = get_artifact_size(self.artifact_path)
        self._log(f"Artifact created: {filename} ({file_size / 1024 / 1024:.2f} MB)")

        if self.cancel_event is not None and self.cancel_event.is_set():
            raise DumpCancelled(f"Backup '{self.job.name}' cancelled before delivery")

        # Step 5: Deliver
        location = self.storage.deliver(self.artifact_path, filename)
        self._log(f"Delivered to: {location}")

        return location, file_size

    def _cleanup(self):
        """Remove the scratch directory and everything left in it."""
        if self.scratch_dir and os.path.exists(self.scratch_dir):
            try:
                shutil.rmtree(self.scratch_dir)
                self._log("Cleaned up scratch directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup scratch directory: {e}", logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: logging level for the module logger
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, f"[{self.job.name}] {message}")


def execute_backup_job(
    job: BackupJob,
    storages: Optional[Mapping[str, StorageConfig]] = None,
    **kwargs
) -> str:
    """
    Execute a single backup job.

    Returns:
        Location of the delivered artifact
    """
    executor = BackupExecutor(job, storages, **kwargs)
    return executor.execute()


def run_backups(
    config: BackupConfig,
    name: Optional[str] = None,
    temp_dir: Optional[str] = None,
    history: Optional[HistoryStore] = None
) -> List[str]:
    """
    Run backups once, in configuration order.

    The batch stops at the first failing job.

    Args:
        config: Loaded configuration
        name: Only run the backup with this name
        temp_dir: Parent directory for scratch directories
        history: Optional run history store

    Returns:
        Delivered locations, one per job

    Raises:
        ValueError: If no backup matches
        Exception: The first job failure
    """
    if name is not None:
        job = config.get_backup(name)
        jobs = [job] if job else []
    else:
        jobs = list(config.backups)

    if not jobs:
        raise ValueError(
            f"Backup not found: {name}" if name else "No backups configured"
        )

    logger.info(f"Running {len(jobs)} backup(s)")

    locations = []
    for job in jobs:
        job.connection.validate()

        try:
            location = execute_backup_job(
                job,
                config.storages,
                binaries=config.settings.binary,
                temp_dir=temp_dir,
                history=history
            )
        except Exception as e:
            logger.error(f"Backup '{job.name}' failed: {e}")
            raise

        logger.info(f"Backup '{job.name}' completed: {location}")
        locations.append(location)

    logger.info("All backups completed successfully")
    return locations
