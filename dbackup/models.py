"""
Backup configuration model.

Jobs, storage templates and global settings are loaded once from a YAML file
and are read-only afterwards. Every class here is a frozen dataclass, so a
job handed to a worker thread can never be mutated by another run.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""
    pass


class DatabaseDriver(str, Enum):
    POSTGRESQL = 'postgresql'
    MYSQL = 'mysql'


_DRIVER_ALIASES = {
    'postgresql': DatabaseDriver.POSTGRESQL,
    'postgres': DatabaseDriver.POSTGRESQL,
    'pg': DatabaseDriver.POSTGRESQL,
    'mysql': DatabaseDriver.MYSQL,
    'mariadb': DatabaseDriver.MYSQL,
}

_DEFAULT_PORTS = {
    DatabaseDriver.POSTGRESQL: 5432,
    DatabaseDriver.MYSQL: 3306,
}


class BackupMode(str, Enum):
    BASIC = 'basic'
    PARALLEL = 'parallel'


class StorageDriver(str, Enum):
    LOCAL = 'local'
    S3 = 's3'


def _require(data: Mapping[str, Any], key: str, context: str):
    value = data.get(key)
    if value is None or value == '':
        raise ConfigError(f"{context}: missing required field '{key}'")
    return value


def _parse_enum(enum_cls, value, context: str):
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ConfigError(f"{context}: invalid value '{value}'. Valid options: {valid}")


def _optional_str(value) -> Optional[str]:
    return None if value is None else str(value)


@dataclass(frozen=True)
class ConnectionConfig:
    host: str
    port: int
    username: str
    password: str = field(default='', repr=False)
    database: str = ''

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]], driver: DatabaseDriver, context: str) -> 'ConnectionConfig':
        if not isinstance(data, Mapping):
            raise ConfigError(f"{context}: 'connection' must be a mapping")

        port = data.get('port', _DEFAULT_PORTS[driver])
        try:
            port = int(port)
        except (TypeError, ValueError):
            raise ConfigError(f"{context}: invalid port '{port}'")

        return cls(
            host=str(data.get('host') or ''),
            port=port,
            username=str(data.get('username') or ''),
            password=str(data.get('password') or ''),
            database=str(data.get('database') or ''),
        )

    def validate(self):
        """
        Check the fields every dump producer needs.

        Raises:
            ConfigError: If host, database or username is empty
        """
        if not self.host:
            raise ConfigError("Database host cannot be empty")
        if not self.database:
            raise ConfigError("Database name cannot be empty")
        if not self.username:
            raise ConfigError("Database username cannot be empty")


@dataclass(frozen=True)
class StorageConfig:
    """
    A concrete storage target.

    Local storage uses ``path``; S3 storage uses ``bucket``, ``region``,
    ``prefix`` and optionally ``endpoint`` and static credentials. Both use
    ``filename_prefix``. Required fields are checked by the storage backend
    when it is built, not here.
    """
    driver: StorageDriver
    path: Optional[str] = None
    filename_prefix: str = ''
    bucket: Optional[str] = None
    region: Optional[str] = None
    prefix: Optional[str] = None
    endpoint: Optional[str] = None
    access_key_id: Optional[str] = field(default=None, repr=False)
    secret_access_key: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], context: str) -> 'StorageConfig':
        if not isinstance(data, Mapping):
            raise ConfigError(f"{context}: storage must be a mapping")

        driver = _parse_enum(StorageDriver, _require(data, 'driver', context), context)
        path = data.get('path')

        return cls(
            driver=driver,
            path=str(Path(path).expanduser()) if path else None,
            filename_prefix=str(data.get('filename_prefix') or ''),
            bucket=_optional_str(data.get('bucket')),
            region=_optional_str(data.get('region')),
            prefix=_optional_str(data.get('prefix')),
            endpoint=_optional_str(data.get('endpoint')),
            access_key_id=_optional_str(data.get('access_key_id')),
            secret_access_key=_optional_str(data.get('secret_access_key')),
        )


@dataclass(frozen=True)
class StorageReference:
    """Points at a named entry of the top-level ``storages`` mapping."""
    ref: str
    prefix: Optional[str] = None
    filename_prefix: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], context: str) -> 'StorageReference':
        return cls(
            ref=str(_require(data, 'ref', context)),
            prefix=_optional_str(data.get('prefix')),
            filename_prefix=_optional_str(data.get('filename_prefix')),
        )


StorageSelection = Union[StorageConfig, StorageReference]


def parse_storage_selection(data, context: str) -> Optional[StorageSelection]:
    """Build an inline config or a reference from a job's ``storage`` entry."""
    if data is None:
        return None
    if isinstance(data, str):
        return StorageReference(ref=data)
    if not isinstance(data, Mapping):
        raise ConfigError(f"{context}: 'storage' must be a mapping or a template name")
    if 'ref' in data:
        return StorageReference.from_dict(data, context)
    return StorageConfig.from_dict(data, context)


@dataclass(frozen=True)
class BackupJob:
    """Backup job configuration"""
    name: str
    driver: DatabaseDriver
    connection: ConnectionConfig
    storage: Optional[StorageSelection] = None
    mode: BackupMode = BackupMode.BASIC
    parallel_jobs: int = 2
    schedule: Optional[str] = None
    binary_path: Optional[str] = None
    retention: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'BackupJob':
        if not isinstance(data, Mapping):
            raise ConfigError("Each backup entry must be a mapping")

        name = str(_require(data, 'name', 'backup'))
        context = f"backup '{name}'"

        driver_name = str(_require(data, 'driver', context)).lower()
        if driver_name not in _DRIVER_ALIASES:
            raise ConfigError(f"{context}: unsupported database driver '{driver_name}'")
        driver = _DRIVER_ALIASES[driver_name]

        mode = _parse_enum(BackupMode, data.get('mode') or BackupMode.BASIC.value, context)

        try:
            parallel_jobs = int(data.get('parallel_jobs', 2))
        except (TypeError, ValueError):
            raise ConfigError(f"{context}: 'parallel_jobs' must be an integer")
        if parallel_jobs < 1:
            raise ConfigError(f"{context}: 'parallel_jobs' must be at least 1")

        # Accept both "schedule: {cron: ...}" and a bare cron string
        schedule = data.get('schedule')
        if isinstance(schedule, Mapping):
            schedule = schedule.get('cron')

        binary_path = data.get('binary_path')

        return cls(
            name=name,
            driver=driver,
            connection=ConnectionConfig.from_dict(data.get('connection'), driver, context),
            storage=parse_storage_selection(data.get('storage'), context),
            mode=mode,
            parallel_jobs=parallel_jobs,
            schedule=str(schedule).strip() if schedule else None,
            binary_path=str(Path(binary_path).expanduser()) if binary_path else None,
            retention=_optional_str(data.get('retention')),
        )


@dataclass(frozen=True)
class BinarySettings:
    pg_dump: Optional[str] = None
    mysqldump: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'BinarySettings':
        data = data or {}
        return cls(
            pg_dump=_optional_str(data.get('pg_dump')),
            mysqldump=_optional_str(data.get('mysqldump')),
        )


@dataclass(frozen=True)
class RetentionSettings:
    schedule: Optional[str] = None
    after_backup: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'RetentionSettings':
        data = data or {}
        schedule = data.get('schedule')
        if isinstance(schedule, Mapping):
            schedule = schedule.get('cron')
        return cls(
            schedule=str(schedule).strip() if schedule else None,
            after_backup=bool(data.get('after_backup', False)),
        )


@dataclass(frozen=True)
class Settings:
    binary: BinarySettings = field(default_factory=BinarySettings)
    max_concurrent: Optional[int] = None
    retention: RetentionSettings = field(default_factory=RetentionSettings)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'Settings':
        data = data or {}
        max_concurrent = data.get('max_concurrent')
        if max_concurrent is not None:
            try:
                max_concurrent = int(max_concurrent)
            except (TypeError, ValueError):
                raise ConfigError("settings: 'max_concurrent' must be an integer")
            if max_concurrent < 1:
                raise ConfigError("settings: 'max_concurrent' must be at least 1")

        return cls(
            binary=BinarySettings.from_dict(data.get('binary')),
            max_concurrent=max_concurrent,
            retention=RetentionSettings.from_dict(data.get('retention')),
        )


@dataclass(frozen=True)
class BackupConfig:
    """Top-level configuration: jobs plus shared storage templates."""
    backups: List[BackupJob]
    storages: Optional[Dict[str, StorageConfig]] = None
    settings: Settings = field(default_factory=Settings)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'BackupConfig':
        if not isinstance(data, Mapping):
            raise ConfigError("Configuration root must be a mapping")

        raw_backups = data.get('backups') or []
        if not isinstance(raw_backups, list):
            raise ConfigError("'backups' must be a list")

        backups = [BackupJob.from_dict(entry) for entry in raw_backups]

        seen = set()
        for job in backups:
            if job.name in seen:
                raise ConfigError(f"Duplicate backup name: {job.name}")
            seen.add(job.name)

        storages = None
        raw_storages = data.get('storages')
        if raw_storages is not None:
            if not isinstance(raw_storages, Mapping):
                raise ConfigError("'storages' must be a mapping of name to storage config")
            storages = {
                str(name): StorageConfig.from_dict(entry, f"storage '{name}'")
                for name, entry in raw_storages.items()
            }

        return cls(
            backups=backups,
            storages=storages,
            settings=Settings.from_dict(data.get('settings')),
        )

    def get_backup(self, name: str) -> Optional[BackupJob]:
        for job in self.backups:
            if job.name == name:
                return job
        return None

    def scheduled_backups(self) -> List[BackupJob]:
        return [job for job in self.backups if job.schedule]


def load_config(path) -> BackupConfig:
    """
    Load a backup configuration from a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Parsed BackupConfig

    Raises:
        ConfigError: If the file cannot be read or is not a valid configuration
    """
    config_path = Path(path)

    try:
        content = config_path.read_text(encoding='utf-8')
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file {config_path}: {e}")

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")

    return BackupConfig.from_dict(data)
