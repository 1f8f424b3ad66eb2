"""
Error types and standard exception handling utilities for the metadata core.

Only ClientQueryError ever crosses the core boundary. Provider failures are
absorbed inside the adapter that hit them and enrichment misses are not
errors at all; the helpers below keep the logging of both consistent.
"""
from typing import Any

from pydantic import ValidationError

from bookshelf.util.log import logger


class ClientQueryError(ValueError):
    """A query is missing its required parameters or is malformed."""


class ProviderTransientError(Exception):
    """
    A provider answered with a non-2xx status or an unusable payload.

    Raised and caught inside a single adapter; callers only ever see the
    resulting ``ok=False`` fetch result.
    """

    status: int | None

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status

    @property
    def rate_limited(self) -> bool:
        return self.status == 429


def handle_external_api_error(
    error: Exception,
    service: str,
    operation: str,
    **context: Any
) -> None:
    """
    Standard logging for external API failures.

    Args:
        error: The caught exception
        service: Name of the external service (e.g., "Google Books", "Open Library")
        operation: What operation was being attempted (e.g., "search", "probe cover")
        **context: Additional context to log (e.g., isbn=..., title=...)

    Example:
        try:
            data = await self._get_json(client_session, url)
        except (ClientError, TimeoutError, ProviderTransientError) as e:
            handle_external_api_error(e, "Open Library", "fetch work", work_key=key)
            return None
    """
    logger.error(
        f"{service} {operation} failed",
        error=str(error),
        error_type=type(error).__name__,
        service=service,
        operation=operation,
        **context
    )


def handle_validation_error(
    error: ValidationError,
    data_source: str,
    **context: Any
) -> None:
    """
    Standard logging for data validation failures.

    Args:
        error: The caught ValidationError
        data_source: Where the invalid data came from (e.g., "Google Books response")
        **context: Additional context to log
    """
    logger.error(
        f"{data_source} validation failed",
        error=str(error),
        error_type=type(error).__name__,
        data_source=data_source,
        **context
    )


def handle_cache_error(
    error: Exception,
    operation: str,
    cache_key: str,
    **context: Any
) -> None:
    """
    Standard logging for cache operation failures.

    Args:
        error: The caught exception
        operation: What cache operation was being attempted (e.g., "get", "set")
        cache_key: The cache key involved
        **context: Additional context to log
    """
    logger.warning(
        f"Cache {operation} failed",
        error=str(error),
        error_type=type(error).__name__,
        operation=operation,
        cache_key=cache_key,
        **context
    )
