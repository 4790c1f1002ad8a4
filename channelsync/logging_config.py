"""
logging_config.py — Loguru setup for ChannelSync

The engine modules log through logging.getLogger(__name__); the API layer
uses loguru directly. Both end up in the same Loguru sinks.

Business Rules:
- One configure() call owns every sink (no print(), no stdlib handlers)
- Production (non-localhost APP_URL): JSON lines on stdout, plus a rotated
  JSON file when LOG_FILE is set (50MB files, 7-day retention)
- Development: coloured lines with the logger name and line number
- httpx/httpcore, SQL echo and APScheduler internals only surface warnings

Called by: channelsync/main.py (lifespan startup)
Depends on: channelsync/config.py (log_level, log_file, is_production)
"""

import logging
import sys

from loguru import logger

from .config import settings

NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "apscheduler", "uvicorn.access")

DEV_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "{message}"
)


def _sinks(level: str, production: bool) -> list[dict]:
    if not production:
        return [{"sink": sys.stdout, "level": level, "format": DEV_FORMAT, "colorize": True}]
    sinks = [{"sink": sys.stdout, "level": level, "format": "{message}", "serialize": True}]
    if settings.log_file:
        sinks.append(
            {
                "sink": settings.log_file,
                "level": level,
                "serialize": True,
                "rotation": "50 MB",
                "retention": "7 days",
                "compression": "gz",
            }
        )
    return sinks


def setup_logging() -> None:
    """Install the sinks and route stdlib logging into Loguru. Safe to call twice."""
    level = settings.log_level.upper()
    production = settings.is_production
    logger.configure(handlers=_sinks(level, production))

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("Logging configured (level={}, production={})", level, production)


class _InterceptHandler(logging.Handler):
    """Forward stdlib records to Loguru, keeping the original caller's location."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())
