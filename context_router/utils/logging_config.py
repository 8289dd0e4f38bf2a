"""
Logging setup for the context router: one stdout handler on the root logger, levels from LOG_LEVEL.
"""

import logging
import sys
from typing import Optional

from .config import AppConfig

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Third-party loggers that flood DEBUG output with wire-level detail
QUIET_LOGGERS = ('boto3', 'botocore', 'urllib3')


def _app_config(config: Optional[AppConfig]) -> AppConfig:
    if config is not None:
        return config
    from .config import config as default_config
    return default_config


def log_level(config: Optional[AppConfig] = None) -> int:
    """Numeric level for the configured LOG_LEVEL name, INFO when the name is unknown."""
    return getattr(logging, _app_config(config).log_level.upper(), logging.INFO)


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Configure the root logger. Safe to call more than once; only the first call installs the handler.

    Args:
        config: AppConfig instance, uses default if None
    """
    level = log_level(config)
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[logging.StreamHandler(sys.stdout)])
    logging.getLogger().setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Get a module logger at the configured level.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance, uses default if None

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(log_level(config))
    return logger
