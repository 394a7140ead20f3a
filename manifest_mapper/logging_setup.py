"""
Centralised logging configuration for Manifest Mapper.

Every module obtains its logger via ``get_logger("<module>")``.  The
pipeline calls ``configure_logging`` once at startup so that all
downstream loggers share one handler, format and level.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional


_CONFIGURED = False

LOG_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)-30s | %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ROOT_LOGGER = "manifest_mapper"


def configure_logging(
    level: int = logging.INFO,
    log_file: Optional[str] = None,
) -> None:
    """Attach handlers to the ``manifest_mapper`` logger namespace.

    Parameters
    ----------
    level:
        Minimum severity to emit.
    log_file:
        If provided, a ``FileHandler`` is added next to the stdout handler.
    """
    global _CONFIGURED  # noqa: PLW0603
    if _CONFIGURED:
        return

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)
    root.propagate = False

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(level)
        fh.setFormatter(formatter)
        root.addHandler(fh)

    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the ``manifest_mapper`` namespace."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
