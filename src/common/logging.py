"""
Process-wide logging setup for the shipping service.
The API server and the audit script call configure_logging once; modules then log through
named loggers such as `shipping.metadata_guard` and `skydropx.client`.
"""

from __future__ import annotations

import logging

from src.common.settings import get_settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# requests logs every connection to the carrier at DEBUG through urllib3.
_NOISY_LOGGERS = ("urllib3", "sqlalchemy.engine")

_LOGGING_CONFIGURED = False


def configure_logging(*, level: str | None = None) -> None:
    """Attach stream (and optional file) handlers to the root logger once per process."""

    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    settings = get_settings()
    level_name = (level or settings.LOG_LEVEL).upper()
    resolved_level = logging.getLevelName(level_name)
    if not isinstance(resolved_level, int):
        resolved_level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.LOG_FILE:
        handlers.append(logging.FileHandler(settings.LOG_FILE, encoding="utf-8"))

    logging.basicConfig(level=resolved_level, format=LOG_FORMAT, handlers=handlers)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved_level, logging.WARNING))
    _LOGGING_CONFIGURED = True
