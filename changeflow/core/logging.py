"""Changeflow – logging.

Every module logs through ``get_logger(__name__)``. The first call wires
the root logger once: a stdout handler plus a file handler writing to
``LOG_FILE``, both at ``LOG_LEVEL``. Pipeline runs log lock ownership,
unit transitions and run summaries; lease renewals from the keeper
thread land in the same handlers.
"""

from __future__ import annotations

import logging
import sys
from typing import List, Optional

from changeflow.core.config import ChangeflowConfig, get_config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
NAMESPACE = "changeflow"


def _build_handlers(config: ChangeflowConfig) -> List[logging.Handler]:
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers: List[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(config.log_file),
    ]
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(config: Optional[ChangeflowConfig] = None) -> None:
    """Attach the console and file handlers to the root logger.

    Does nothing when the root logger already has handlers, so CLIs,
    tests and embedding applications can all call it safely.
    """

    root_logger = logging.getLogger()
    if root_logger.handlers:
        return

    config = config or get_config()
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    root_logger.setLevel(level)
    for handler in _build_handlers(config):
        root_logger.addHandler(handler)
    logging.getLogger(NAMESPACE).setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """Return the logger for ``name`` under the ``changeflow`` namespace."""

    setup_logging()
    if name == NAMESPACE or name.startswith(f"{NAMESPACE}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{NAMESPACE}.{name}")
