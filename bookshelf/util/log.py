import logging
import logging.handlers
import pathlib
from typing import Any

import structlog

from bookshelf.internal.env_settings import ApplicationSettings

# Per-request access lines drown out provider fallbacks at INFO
_NOISY_LOGGERS = ("aiohttp.access", "aiohttp.client", "uvicorn.access")


def _renderer(log_format: str) -> Any:
    if log_format.lower() == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def setup_logging(settings: ApplicationSettings) -> None:
    """
    Configure structlog for the service and route stdlib records (aiohttp,
    uvicorn) through the same level and optional rotating file.

    ``debug`` forces DEBUG regardless of ``log_level`` and keeps access logs.
    Every event carries ``service`` and ``version`` so JSON output from
    several instances can be told apart.
    """
    level = logging.DEBUG if settings.debug else getattr(
        logging, settings.log_level.upper(), logging.INFO
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _renderer(settings.log_format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    structlog.contextvars.bind_contextvars(service="bookshelf", version=settings.version)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [logging.StreamHandler()]

    if settings.log_file:
        log_path = pathlib.Path(settings.config_dir) / "logs"
        log_path.mkdir(parents=True, exist_ok=True)
        root_logger.addHandler(
            logging.handlers.RotatingFileHandler(
                filename=log_path / settings.log_file,
                maxBytes=50 * 1024 * 1024,
                backupCount=3,
            )
        )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level if settings.debug else logging.WARNING)


logger: structlog.stdlib.BoundLogger = structlog.stdlib.get_logger()
