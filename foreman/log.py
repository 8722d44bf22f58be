"""
Process logging setup for the foreman CLI.

Library modules only create loggers under the ``foreman`` namespace; handlers
are installed here.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional


LOG_FILE = "foreman.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def setup_logging(log_file: Optional[str] = LOG_FILE, level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger("foreman")
    if logger.handlers:
        return logger
    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    return logger
