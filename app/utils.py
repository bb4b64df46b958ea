"""
Shared helpers.
"""
import logging

from app.core import config


_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
_configured = False


def _configure_root() -> None:
    global _configured
    if _configured:
        return
    logging.basicConfig(level=config.LOG_LEVEL, format=_LOG_FORMAT)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a module logger.

    The root handler is configured on first use with LOG_LEVEL from config.

    Usage:
        log = get_logger(__name__)
        log.info("Attached table %s", table_name)
    """
    _configure_root()
    return logging.getLogger(name)
