"""Loguru setup shared by the API process and the Celery workers.

Profiles live in ``app/config/logging_config.json`` and are picked by
``ENVIRONMENT`` (``production``, ``testing``, anything else -> ``logger``).
Standard-library loggers (uvicorn, celery, httpx, ...) are routed into
loguru so every line carries a ``request_id``.
"""

import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Any, Dict

from loguru import logger

from app.config.settings import settings
from app.utils.context import get_request_id

CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "logging_config.json"

# Request id used outside of HTTP requests (beat ticks, startup)
DEFAULT_REQUEST_ID = "app"

INTERCEPTED_LOGGERS = (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "celery",
    "celery.task",
    "httpx",
)


class InterceptHandler(logging.Handler):
    """Forwards stdlib log records to loguru, keeping the caller's frame"""

    def emit(self, record: logging.LogRecord):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.bind(request_id=get_request_id() or DEFAULT_REQUEST_ID).opt(
            depth=depth, exception=record.exc_info
        ).log(level, record.getMessage())


def load_profile(environment: str) -> Dict[str, Any]:
    with open(CONFIG_PATH) as config_file:
        profiles = json.load(config_file)
    name = environment if environment in ("production", "testing") else "logger"
    return profiles[name]


def configure_logging(environment: str):
    profile = load_profile(environment)
    level = (settings.LOG_LEVEL or profile["level"]).upper()

    logger.remove()
    logger.configure(extra={"request_id": DEFAULT_REQUEST_ID})
    logger.add(
        sys.stdout,
        level=level,
        format=profile["console_format"],
        colorize=environment != "production",
        backtrace=True,
    )

    # The testing profile logs to the console only
    log_dir = profile.get("log_dir")
    if log_dir:
        file_sink = f"{log_dir}/{date.today():%Y-%m-%d}-{profile['filename']}"
        file_options = dict(
            rotation=profile["rotation"],
            retention=profile["retention"],
            level=level,
            enqueue=True,
            colorize=False,
        )
        if profile.get("use_json_logs"):
            logger.add(file_sink, serialize=True, **file_options)
        else:
            logger.add(file_sink, format=profile["file_format"], **file_options)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in INTERCEPTED_LOGGERS:
        logging.getLogger(name).handlers = [InterceptHandler()]

    return logger


custom_logger = configure_logging(settings.ENVIRONMENT)


def get_logger():
    """Logger bound to the current request id (or ``app`` outside requests)."""
    return custom_logger.bind(request_id=get_request_id() or DEFAULT_REQUEST_ID)
