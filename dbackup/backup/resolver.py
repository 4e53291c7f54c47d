"""
Storage resolution for backup jobs.

A job either carries its storage inline or points at one of the shared
templates declared under ``storages``, optionally overriding the key prefix
and the filename prefix.
"""

import dataclasses
from typing import Mapping, Optional

from dbackup.models import BackupJob, StorageConfig, StorageReference


class ConfigResolutionError(Exception):
    """Raised when a job's storage cannot be turned into a concrete config."""
    pass


class MissingStorageConfig(ConfigResolutionError):
    pass


class NoTemplatesDefined(ConfigResolutionError):
    pass


class StorageNotFound(ConfigResolutionError):
    pass


def resolve_storage(
    job: BackupJob,
    templates: Optional[Mapping[str, StorageConfig]]
) -> StorageConfig:
    """
    Resolve the storage configuration a job should deliver to.

    Args:
        job: Backup job
        templates: Shared storage templates by name (None if none declared)

    Returns:
        Concrete StorageConfig

    Raises:
        MissingStorageConfig: If the job has no storage at all
        NoTemplatesDefined: If the job references a template but none exist
        StorageNotFound: If the referenced template does not exist
    """
    selection = job.storage

    if selection is None:
        raise MissingStorageConfig(f"Backup '{job.name}' has no storage configured")

    if isinstance(selection, StorageConfig):
        return selection

    if not isinstance(selection, StorageReference):
        raise ConfigResolutionError(
            f"Backup '{job.name}' has an invalid storage selection: {selection!r}"
        )

    if not templates:
        raise NoTemplatesDefined(
            f"Backup '{job.name}' references storage '{selection.ref}' "
            f"but no storages are defined"
        )

    template = templates.get(selection.ref)
    if template is None:
        raise StorageNotFound(
            f"Storage '{selection.ref}' referenced by backup '{job.name}' not found. "
            f"Available: {sorted(templates.keys())}"
        )

    overrides = {}
    if selection.prefix is not None:
        overrides['prefix'] = selection.prefix
    if selection.filename_prefix is not None:
        overrides['filename_prefix'] = selection.filename_prefix

    return dataclasses.replace(template, **overrides)
