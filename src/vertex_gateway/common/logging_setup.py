"""Central logging setup for the project."""
from __future__ import annotations
import logging
import sys

def setup_logging(level: int | str = logging.INFO) -> None:
    """
    Configure root logger with sane defaults.

    Args:
        level: Logging level, numeric or a name such as "DEBUG".
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.strip().upper())
        if not isinstance(level, int):
            level = logging.INFO
    handler = logging.StreamHandler(sys.stdout)
    fmt = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
    handler.setFormatter(logging.Formatter(fmt))
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    # httpx logs every request line at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
