"""dform - compiler and execution planner for declarative SQL warehouse projects."""

from __future__ import annotations

import logging
import sys

__version__ = "3.0.0"

_HANDLER_NAME = "dform"


def setup_logging(level: str = "INFO") -> None:
    """Send ``dform.*`` log records to stderr.

    stdout is left to ``--json`` output. Files compile on worker threads, so
    each record names its thread. Calling again swaps the handler for one on
    the current ``sys.stderr`` at the new level.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger("dform")
    for old in [h for h in logger.handlers if h.get_name() == _HANDLER_NAME]:
        logger.removeHandler(old)

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s (%(threadName)s): %(message)s",
        datefmt="%H:%M:%S",
    ))
    logger.addHandler(handler)
    logger.setLevel(log_level)
