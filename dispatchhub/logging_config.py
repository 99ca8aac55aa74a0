"""dispatchhub logging configuration.

All modules log through loguru's shared `logger`. This module installs the
sinks once at daemon startup: human-readable stderr plus a rotating file under
`<data_dir>/logs/dispatchhub.log`.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {message}"
LOG_ROTATION = "10 MB"
LOG_RETENTION = 5


def setup_logging(level: Optional[str] = None, log_dir: Optional[Path] = None) -> None:
    """Configure dispatchhub logging.

    Args:
        level: Optional override for `DISPATCH_LOG_LEVEL`.
        log_dir: Directory for the rotating file sink; stderr only when omitted.
    """
    if level:
        os.environ["DISPATCH_LOG_LEVEL"] = level
    resolved = os.getenv("DISPATCH_LOG_LEVEL", "INFO").upper()

    logger.remove()
    logger.add(sys.stderr, level=resolved, format=LOG_FORMAT, backtrace=False, diagnose=False)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "dispatchhub.log",
            level=resolved,
            format=LOG_FORMAT,
            rotation=LOG_ROTATION,
            retention=LOG_RETENTION,
            enqueue=True,
            backtrace=False,
            diagnose=False,
        )
