import os


class Config:
    """Base configuration"""

    # Job definitions
    CONFIG_PATH = os.environ.get('DBACKUP_CONFIG') or 'backup.yml'

    # Data directories
    BASE_DIR = os.environ.get('DBACKUP_DATA_DIR') or '/var/lib/dbackup'
    # Scratch space for dumps, None uses the system temp directory
    TEMP_DIR = os.environ.get('DBACKUP_TEMP_DIR') or None
    LOG_DIR = os.environ.get('DBACKUP_LOG_DIR') or os.path.join(BASE_DIR, 'logs')

    # Logging
    DEBUG = False
    LOG_LEVEL = os.environ.get('DBACKUP_LOG_LEVEL', 'INFO').upper()
    LOG_TO_FILE = True

    # Run history
    HISTORY_DATABASE_URL = os.environ.get('DBACKUP_HISTORY_URL') or f'sqlite:///{os.path.join(BASE_DIR, "history.db")}'

    # Scheduler
    MAX_CONCURRENT_BACKUPS = int(os.environ.get('DBACKUP_MAX_CONCURRENT', '2'))
    # None means the local timezone of the host
    SCHEDULER_TIMEZONE = os.environ.get('DBACKUP_TIMEZONE') or None


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    HISTORY_DATABASE_URL = f'sqlite:///{os.path.join(DATA_DIR, "history.db")}'


class TestingConfig(DevelopmentConfig):
    """Testing configuration"""
    LOG_TO_FILE = False
    TEMP_DIR = None
    HISTORY_DATABASE_URL = 'sqlite://'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def get_config(config_name=None):
    """Return the settings class for an environment name (DBACKUP_ENV by default)."""
    if config_name is None:
        config_name = os.environ.get('DBACKUP_ENV', 'production')

    if config_name not in config:
        raise ValueError(
            f"Unknown environment: {config_name}. "
            f"Valid options: {sorted(config.keys())}"
        )

    return config[config_name]
