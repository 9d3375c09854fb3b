from __future__ import annotations

import logging
import sys

from policytracker.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Third-party loggers that drown out request logs at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "PIL")


def configure_logging() -> None:
    # Configure the root logger once; repeated app factories in tests must not stack handlers.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    if not any(getattr(handler, "_policytracker", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._policytracker = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
