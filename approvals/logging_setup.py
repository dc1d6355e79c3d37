"""
approvals/logging_setup.py

Application logging: stream handler always, rotating file under LOG_DIR when set.
"""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

from flask import Flask

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
LOG_FILE = "approvals.log"


def setup_logging(app: Flask) -> Optional[Path]:
    """Configure the `approvals` logger tree. Returns the log file path, if any."""
    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO

    fmt = logging.Formatter(LOG_FORMAT)
    logger = logging.getLogger("approvals")
    logger.setLevel(level)

    # avoid duplicate handlers when create_app() runs more than once (tests)
    if not any(getattr(h, "_approvals_stream", False) for h in logger.handlers):
        stream = logging.StreamHandler()
        stream.setFormatter(fmt)
        stream._approvals_stream = True
        logger.addHandler(stream)

    log_dir = app.config.get("LOG_DIR")
    if not log_dir:
        return None

    root = Path(log_dir).expanduser()
    root.mkdir(parents=True, exist_ok=True)
    log_path = root / LOG_FILE

    handler = logging.handlers.RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=3, encoding="utf-8")
    handler.setFormatter(fmt)
    handler.setLevel(level)

    # also wire the flask/werkzeug loggers
    for name in ("approvals", "werkzeug", app.logger.name):
        lg = logging.getLogger(name)
        if not any(getattr(h, "baseFilename", "") == str(log_path.resolve()) for h in lg.handlers):
            lg.addHandler(handler)

    return log_path
