import logging
import os
from pathlib import Path

__all__ = ["logger"]

_LOG_DIR = Path(os.getenv("TRACKER_LOG_DIR", "./log")).expanduser()

logger = logging.getLogger("tracker_agent")
if not logger.handlers:
    logger.setLevel(logging.INFO)
    _LOG_DIR.mkdir(parents=True, exist_ok=True)
    _fh = logging.FileHandler(_LOG_DIR / "agent.log", encoding="utf-8")
    _fh.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_fh)
