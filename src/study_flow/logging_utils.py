"""Process logging setup shared by the recovery CLI and the submission service."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
LEVEL_ENV = "STUDY_FLOW_LOG_LEVEL"

# Per-request connection chatter from the sink HTTP client.
_QUIET_LOGGERS = ("urllib3", "requests")


def configure_logging(level: int = logging.INFO, log_paths: Iterable[str] | None = None) -> None:
    """Install stream (and optional file) handlers unless the host already configured logging.

    ``STUDY_FLOW_LOG_LEVEL`` (a level name such as ``DEBUG``) overrides ``level``.
    """
    root = logging.getLogger()
    if root.handlers:
        return
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    for entry in log_paths or ():
        path = Path(entry)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(
        level=_resolve_level(level),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=handlers,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _resolve_level(default: int) -> int:
    raw = (os.getenv(LEVEL_ENV) or "").strip().upper()
    if not raw:
        return default
    resolved = logging.getLevelName(raw)
    return resolved if isinstance(resolved, int) else default
