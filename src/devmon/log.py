"""Logging setup for devmon."""

import logging
from logging.handlers import RotatingFileHandler

from devmon.config import DevmonConfig

LOG_FILE_NAME = "devmon.log"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(config: DevmonConfig, verbose: bool = False) -> logging.Logger:
    """
    Configure the ``devmon`` logger with a rotating file and a stderr handler.

    The file handler follows the configured level; stderr only shows warnings
    unless ``verbose`` is set. Calling this twice replaces the handlers.

    Args:
        config: Loaded configuration (log directory, rotation and level).
        verbose: Send DEBUG output to stderr as well.

    Returns:
        The configured ``devmon`` logger.
    """
    logger = logging.getLogger("devmon")
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    log_dir = config.log_dir.expanduser()
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / LOG_FILE_NAME,
            maxBytes=config.log_max_bytes,
            backupCount=config.log_keep,
            encoding="utf-8",
        )
    except OSError as e:
        logger.warning("File logging disabled, cannot use %s: %s", log_dir, e)
        return logger

    level = logging.getLevelName(config.log_level)
    file_handler.setLevel(level if isinstance(level, int) else logging.INFO)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    return logger
