"""Log sink configuration.

Every module logs through the shared loguru ``logger``; this module only
decides where records go and at which level.
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from geoengine.core import config

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(settings: config.Settings) -> None:
    """Replace the default loguru sink with one honouring the settings.

    Args:
        settings: Application settings providing ``log_level``.
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.log_level.upper(),
        format=LOG_FORMAT,
        backtrace=False,
        diagnose=False,
    )
