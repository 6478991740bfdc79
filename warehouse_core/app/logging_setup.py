import os
import logging
import logging.handlers
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_FILE_NAME = "warehouse_core.log"


def setup_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> Optional[Path]:
    """
    Configure root logging once for the service.

    Console output is always enabled. When LOG_DIR (or `log_dir`) is set, a
    rotating file handler is added under that folder. Returns the log file
    path, or None when logging to console only.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = getattr(logging, level_name, logging.INFO)
    fmt = logging.Formatter(LOG_FORMAT)

    root = logging.getLogger()
    root.setLevel(log_level)

    if not any(getattr(h, "_warehouse_console", False) for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        console._warehouse_console = True
        root.addHandler(console)

    target_dir = log_dir or os.getenv("LOG_DIR")
    if not target_dir:
        return None

    folder = Path(target_dir).expanduser()
    folder.mkdir(parents=True, exist_ok=True)
    log_path = folder / LOG_FILE_NAME

    handler = logging.handlers.RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=3, encoding="utf-8")
    handler.setFormatter(fmt)
    handler.setLevel(log_level)

    # avoid duplicate handlers on reload
    if not any(getattr(h, "baseFilename", "").endswith(LOG_FILE_NAME) for h in root.handlers):
        root.addHandler(handler)

    # uvicorn's own loggers do not propagate to root
    for name in ("uvicorn", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.setLevel(log_level)
        if not any(getattr(h, "baseFilename", "").endswith(LOG_FILE_NAME) for h in lg.handlers):
            lg.addHandler(handler)

    return log_path
