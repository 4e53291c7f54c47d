"""
Retention policy enforcement for backups.

Retention is expressed per job as a duration string ("7d", "2w", "6mon").
Anything strictly older than now - duration in the job's storage is removed.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from dbackup.models import BackupConfig, BackupJob
from .resolver import resolve_storage
from .storage import create_storage

logger = logging.getLogger(__name__)

_UNIT_SECONDS = {
    's': 1, 'sec': 1, 'second': 1, 'seconds': 1,
    'm': 60, 'min': 60, 'minute': 60, 'minutes': 60,
    'h': 3600, 'hour': 3600, 'hours': 3600,
    'd': 86400, 'day': 86400, 'days': 86400,
    'w': 604800, 'week': 604800, 'weeks': 604800,
    # Fixed approximations, not calendar aware
    'mon': 2592000, 'month': 2592000, 'months': 2592000,
    'y': 31536000, 'year': 31536000, 'years': 31536000,
}


class InvalidRetentionSpec(ValueError):
    """Raised when a retention duration string cannot be parsed."""
    pass


def parse_duration(duration_str: str) -> timedelta:
    """
    Parse a duration string like "30s", "5m", "1d", "2w", "6mon" or "1y".

    Args:
        duration_str: Number immediately followed by a unit

    Returns:
        The duration as a timedelta

    Raises:
        InvalidRetentionSpec: If the string is empty, lacks a number or a
            unit, or uses an unknown unit
    """
    text = (duration_str or '').strip().lower()

    if not text:
        raise InvalidRetentionSpec("Duration string cannot be empty")

    pos = 0
    while pos < len(text) and text[pos] in '0123456789':
        pos += 1

    number, unit = text[:pos], text[pos:]

    if not number:
        raise InvalidRetentionSpec(
            f"Invalid duration format: '{duration_str}'. Expected format like '1d', '2w', '30m', '3600s'"
        )
    if not unit:
        raise InvalidRetentionSpec(
            f"Missing time unit in duration: '{duration_str}'. Supported: s, m, h, d, w, mon, y"
        )
    if unit not in _UNIT_SECONDS:
        raise InvalidRetentionSpec(
            f"Unknown time unit '{unit}'. Supported: s, m, h, d, w, mon, y (e.g., '1d', '2w', '30m')"
        )

    try:
        return timedelta(seconds=int(number) * _UNIT_SECONDS[unit])
    except OverflowError:
        raise InvalidRetentionSpec(f"Duration too large: '{duration_str}'")


def enforce_retention(storage, retention_spec: str, now: Optional[datetime] = None) -> int:
    """
    Apply a retention duration to a storage backend.

    Args:
        storage: LocalStorage or S3Storage
        retention_spec: Duration string
        now: Reference time (default: current time)

    Returns:
        Number of deleted items

    Raises:
        InvalidRetentionSpec: If retention_spec is malformed
        StorageError: If the backend cannot list its contents
    """
    max_age = parse_duration(retention_spec)
    logger.info(f"Applying retention policy: {retention_spec}")
    return storage.cleanup_older_than(max_age, now=now)


class RetentionManager:
    """
    Manages retention policy enforcement for backup jobs.

    Jobs without a retention value are skipped. A failing job is recorded in
    the summary and does not stop the pass.
    """

    def __init__(self, config: BackupConfig):
        self.config = config
        self.logs = []

    def enforce_all_policies(self, jobs: Optional[Iterable[BackupJob]] = None) -> Dict[str, Any]:
        """
        Enforce retention policies for all (or the given) backup jobs.

        Returns:
            Dict with summary of cleanup operations:
            {
                'jobs_processed': int,
                'deleted': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        self._log("Starting retention policy enforcement")

        summary = {
            'jobs_processed': 0,
            'deleted': 0,
            'errors': []
        }

        for job in (self.config.backups if jobs is None else jobs):
            if not job.retention:
                continue

            try:
                summary['deleted'] += self.enforce_job_policy(job)
                summary['jobs_processed'] += 1
            except Exception as e:
                error_msg = f"Failed to enforce policy for job {job.name}: {e}"
                self._log(error_msg, logging.ERROR)
                summary['errors'].append(error_msg)

        self._log(
            f"Retention enforcement complete. "
            f"Jobs: {summary['jobs_processed']}, "
            f"Deleted: {summary['deleted']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def enforce_job_policy(self, job: BackupJob, storage=None) -> int:
        """
        Enforce retention policy for a specific job.

        Args:
            job: BackupJob with a retention value
            storage: Already built backend for the job (resolved if omitted)

        Returns:
            Number of deleted items
        """
        if not job.retention:
            self._log(f"Retention not configured for job {job.name}, skipping")
            return 0

        # Parse first so a typo never costs a storage round trip
        parse_duration(job.retention)

        if storage is None:
            storage = create_storage(resolve_storage(job, self.config.storages))

        self._log(f"Enforcing retention policy for job {job.name}: {job.retention}")
        deleted = enforce_retention(storage, job.retention)
        self._log(f"Job {job.name}: deleted {deleted} backup(s)")
        return deleted

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def enforce_retention_policies(config: BackupConfig) -> Dict[str, Any]:
    """
    Enforce retention policies for all jobs.

    This function is called by the scheduler's retention loop and by the
    ``cleanup`` command.
    """
    manager = RetentionManager(config)
    return manager.enforce_all_policies()
