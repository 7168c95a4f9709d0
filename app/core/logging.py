import logging
import sys
from typing import Optional

from app.core.config import settings

# Third-party loggers that are chatty at INFO: one httpx line per Convex write,
# one access line per dashboard poll.
NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def configure_logging(level: Optional[str] = None) -> None:
    """
    Install one stdout handler on the root logger.

    Args:
        level: Overrides settings.log_level (e.g. "DEBUG" while diagnosing
            buffered detail writes)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel((level or settings.log_level).upper())

    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        fmt=f"%(asctime)s [%(levelname)s] [{settings.service_name}:{settings.environment}] [%(name)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    ))
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
