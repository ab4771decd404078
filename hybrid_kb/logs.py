"""
Logging setup for the ``hybrid_kb`` logger hierarchy.

Library modules only call ``logging.getLogger(__name__)``; an application
embedding the knowledge base calls :func:`setup_logger` once at startup to
route everything to a timestamped log file.
"""

import logging
import os
from datetime import datetime

LOGGER_NAME = "hybrid_kb"


def setup_logger(log_dir: str = ".hybridkb/logs",
                 level: int = logging.DEBUG) -> logging.Logger:
    """Creates a file logger. All verbose output goes here."""
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(log_dir, f"kb_{timestamp}.log")

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # Avoid stacking handlers when called more than once per process
    for handler in list(logger.handlers):
        if isinstance(handler, logging.FileHandler):
            logger.removeHandler(handler)
            handler.close()

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(level)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%H:%M:%S"
    ))
    logger.addHandler(fh)

    return logger
