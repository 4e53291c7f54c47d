"""
Backup module for dbackup.

This module handles the core backup functionality including:
- Storage resolution (inline configs and shared templates)
- Dump pipelines (basic and parallel)
- Compression
- Storage (S3 and local)
- Execution orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor, execute_backup_job, run_backups
from .dumps import BasicDump, ParallelDump, create_pipeline
from .resolver import resolve_storage
from .storage import S3Storage, LocalStorage, create_storage
from .retention import RetentionManager, enforce_retention, parse_duration

__all__ = [
    'BackupExecutor',
    'execute_backup_job',
    'run_backups',
    'BasicDump',
    'ParallelDump',
    'create_pipeline',
    'resolve_storage',
    'S3Storage',
    'LocalStorage',
    'create_storage',
    'RetentionManager',
    'enforce_retention',
    'parse_duration'
]
