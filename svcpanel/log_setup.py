"""Logging setup for the panel.

Console output always goes to stderr. A size-rotated file is added when
``LoggingConfig.file`` is set; rotation keeps flash writes bounded on the
router. ``SVCPANEL_LOG_LEVEL`` overrides the configured level.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

from svcpanel.core import LoggingConfig


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_CONFIGURED_HANDLERS: list[logging.Handler] = []


def _parse_level(level_name: str) -> int:
    name = (level_name or "").strip().upper()
    if name == "WARN":
        name = "WARNING"
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def setup_logging(config: LoggingConfig | None = None) -> logging.Logger:
    config = config or LoggingConfig()
    root = logging.getLogger()
    for handler in _CONFIGURED_HANDLERS:
        root.removeHandler(handler)
        handler.close()
    _CONFIGURED_HANDLERS.clear()

    root.setLevel(_parse_level(os.getenv("SVCPANEL_LOG_LEVEL") or config.level))
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)
    _CONFIGURED_HANDLERS.append(console)

    if config.file:
        path = Path(config.file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                path,
                maxBytes=max(config.max_bytes, 64 * 1024),
                backupCount=max(config.backups, 1),
                encoding="utf-8",
            )
        except OSError as exc:
            root.warning("Cannot open log file %s: %s", path, exc)
        else:
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
            _CONFIGURED_HANDLERS.append(file_handler)
    return root
