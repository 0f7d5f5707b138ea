from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Third-party loggers that are chatty at INFO.
_NOISY = ("aiohttp", "urllib3", "asyncio")


def setup_logging(level: str | int | None = None, log_file: Optional[str] = None) -> None:
    """
    Configure application logging with a consistent, upgrade-friendly formatter.
    """
    if level is None:
        level = os.getenv("MATTER_CRAWLER_LOG_LEVEL", "INFO")

    if isinstance(level, str):
        level = _LEVELS.get(level.upper(), logging.INFO)

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(level=level, format=_FORMAT, handlers=handlers, force=True)

    for name in _NOISY:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
