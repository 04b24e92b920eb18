from __future__ import annotations

import logging
import logging.config
import sys

from detector_link.core.config import get_settings

# Frame and result traffic is logged per message at DEBUG; keep it out of
# service logs unless explicitly asked for.
CHATTY_LOGGERS = (
    "detector_link.services.control_channel",
    "detector_link.services.detection_client",
)


def setup_logging(level_name: str | None = None, wire_debug: bool | None = None) -> None:
    """
    Configure application logging.

    The detection runner and the HTTP handlers log from different threads,
    so the thread name is part of every line.
    """
    if level_name is None:
        level_name = get_settings().log_level
    if wire_debug is None:
        wire_debug = get_settings().log_wire_debug
    level_name = (level_name or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    loggers = {
        # Status polling would flood container logs
        "uvicorn.access": {"level": "WARNING"},
        "detector_link": {"level": level},
    }
    for name in CHATTY_LOGGERS:
        loggers[name] = {"level": level if wire_debug else max(level, logging.INFO)}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"
                }
            },
            "handlers": {
                "stdout": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "stream": sys.stdout,
                }
            },
            "root": {"level": level, "handlers": ["stdout"]},
            "loggers": loggers,
        }
    )
