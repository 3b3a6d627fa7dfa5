from __future__ import annotations

import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from .config import Settings

PLAIN_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(settings: Settings) -> None:
    root = logging.getLogger()
    if root.handlers:
        for h in list(root.handlers):
            root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    if settings.LOG_JSON:
        formatter: logging.Formatter = JsonFormatter(
            "%(levelname)s %(name)s %(message)s %(asctime)s"
        )
    else:
        formatter = logging.Formatter(PLAIN_FORMAT)
    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(settings.LOG_LEVEL.upper())

    # quiet noisy loggers
    logging.getLogger("uvicorn.access").setLevel("WARNING")
    logging.getLogger("httpx").setLevel("WARNING")
