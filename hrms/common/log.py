"""Logging configuration for the HRMS API."""

import logging
import sys

from hrms.config import settings


def setup_logging() -> None:
    """Configure the root logger from ``settings.LOG_LEVEL``.

    Safe to call more than once; ``basicConfig`` is a no-op when handlers
    are already installed.
    """
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Third-party noise
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured: level=%s env=%s", settings.LOG_LEVEL, settings.ENVIRONMENT,
    )
