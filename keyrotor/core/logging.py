from __future__ import annotations

import logging

from keyrotor.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure root logging once per process; controllers log event names with key=value fields.
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # SQLAlchemy engine logs are too chatty at INFO for a reconcile loop.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
