import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '0.4.0'


def configure_logging(level='INFO', log_file=None):
    """
    Configure application logging.

    Console output always; a rotating file handler when log_file is set.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)
        log_file: Optional path of the rotating log file

    Returns:
        The configured root logger
    """
    log_level = logging.getLevelName(str(level).upper())
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
    if log_file:
        log_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # boto3 is chatty at DEBUG
    for noisy in ('botocore', 'boto3', 's3transfer', 'urllib3'):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

    root = logging.getLogger()
    root.info(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return root
