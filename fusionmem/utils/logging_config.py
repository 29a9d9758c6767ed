"""
Centralized logging configuration for the retrieval engine.
"""

import logging
import sys
from typing import Optional

from .config import AppConfig

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Setup centralized logging configuration.

    Args:
        config: AppConfig instance, uses default if None
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    logging.basicConfig(level=_resolve_level(config.log_level), format=LOG_FORMAT, handlers=[logging.StreamHandler(sys.stdout)])

    # Driver chatter drowns out degradation warnings at INFO
    for noisy in ('botocore', 'urllib3', 'opensearch', 'gremlinpython'):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Get a logger with proper configuration.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance, uses default if None

    Returns:
        Configured logger instance
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(config.log_level))
    return logger


def _resolve_level(level_name: str) -> int:
    level = getattr(logging, level_name.upper(), None)
    return level if isinstance(level, int) else logging.INFO
