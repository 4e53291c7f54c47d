import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '0.3.0'


def configure_logging(settings):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if getattr(settings, 'DEBUG', False) else logging.getLevelName(settings.LOG_LEVEL)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers.append(console_handler)

    # File handler
    file_error = None
    if getattr(settings, 'LOG_TO_FILE', True):
        try:
            os.makedirs(settings.LOG_DIR, exist_ok=True)
            file_handler = RotatingFileHandler(
                os.path.join(settings.LOG_DIR, 'dbackup.log'),
                maxBytes=10485760,  # 10MB
                backupCount=10
            )
        except OSError as e:
            file_error = e
        else:
            file_handler.setLevel(log_level)
            file_formatter = logging.Formatter(
                '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
            )
            file_handler.setFormatter(file_formatter)
            handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # botocore is very chatty at DEBUG
    logging.getLogger('botocore').setLevel(max(log_level, logging.INFO))
    logging.getLogger('apscheduler').setLevel(max(log_level, logging.INFO))

    app_logger = logging.getLogger(__name__)
    if file_error is not None:
        app_logger.warning(f"File logging disabled, cannot write to {settings.LOG_DIR}: {file_error}")
    app_logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)})")
