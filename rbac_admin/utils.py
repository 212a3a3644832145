"""
Logging helpers shared by every module.

Usage:
    from rbac_admin.utils import get_logger

    log = get_logger(__name__)
"""
import logging

from rbac_admin.core import config


_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger once; later calls only adjust the level."""
    global _configured
    if not _configured:
        logging.basicConfig(format=_LOG_FORMAT)
        _configured = True
    logging.getLogger("rbac_admin").setLevel(level or config.LOG_LEVEL)


def get_logger(name: str) -> logging.Logger:
    """Return a logger for the module, configuring logging on first use."""
    if not _configured:
        configure_logging()
    return logging.getLogger(name)
