import logging
import os
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .settings import Settings


def configure_logging(level: Optional[str] = None, settings: Optional["Settings"] = None) -> int:
    """Set the root log level.

    The level comes from ``level``, then ``settings.log_level``, then the
    LOG_LEVEL / CODEK_LOG_LEVEL environment. Returns the numeric level that
    was applied.
    """
    if level is None and settings is not None:
        level = settings.log_level
    level_str = (level or os.getenv("CODEK_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "INFO").upper()
    log_level = getattr(logging, level_str, None)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    root_logger.setLevel(log_level)

    logger = logging.getLogger(__name__)
    logger.info("Logging initialized. Log level is set to: %s (%d)", level_str, log_level)
    return log_level
