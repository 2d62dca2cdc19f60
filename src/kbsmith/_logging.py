"""Logging configuration for kbsmith.

Modules log through the standard library:

    import logging
    log = logging.getLogger(__name__)

The level is read from the KBSMITH_LOG_LEVEL environment variable
(DEBUG, INFO, WARNING, ERROR; INFO when unset).
"""

import logging
import os
import sys

PACKAGE_LOGGER = "kbsmith"


def configure_logging(level_name: str | None = None) -> None:
    """Configure the kbsmith package logger.

    Call once at startup (the CLI does). Later calls are no-ops.

    Args:
        level_name: Explicit level, overriding KBSMITH_LOG_LEVEL.
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)

    if package_logger.handlers:
        return

    level_name = (level_name or os.environ.get("KBSMITH_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            fmt="[%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    package_logger.setLevel(level)
    package_logger.addHandler(handler)

    # Avoid duplicate lines when the host application configures the root logger
    package_logger.propagate = False
