# -*- coding: utf-8 -*-
from __future__ import annotations
import logging, logging.handlers
from pathlib import Path

LOG_FILENAME = "gearflow.log"

def setup_logging(settings) -> Path:
    """Configure rotating file logging under GEARFLOW_DATA_ROOT/logs/gearflow.log"""
    root = Path(settings.GEARFLOW_DATA_ROOT).expanduser()
    log_dir = root / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / LOG_FILENAME
    level = logging.getLevelName(str(settings.LOG_LEVEL).upper())
    if not isinstance(level, int):
        level = logging.INFO

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    handler = logging.handlers.RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=3, encoding="utf-8")
    handler.setFormatter(fmt)
    handler.setLevel(level)

    logger = logging.getLogger()  # root
    logger.setLevel(level)
    if not _has_file_handler(logger):
        logger.addHandler(handler)

    # uvicorn loggers do not propagate to root
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.setLevel(level)
        if not _has_file_handler(lg):
            lg.addHandler(handler)

    return log_path


def _has_file_handler(lg: logging.Logger) -> bool:
    return any(getattr(h, "baseFilename", "").endswith(LOG_FILENAME) for h in lg.handlers)
