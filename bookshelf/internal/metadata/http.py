"""
HTTP plumbing shared by the provider adapters.
"""
import asyncio
from typing import Any, Awaitable, Callable, Mapping

from aiohttp import ClientError, ClientSession, ClientTimeout

from bookshelf.util.exceptions import ProviderTransientError
from bookshelf.util.log import logger


async def get_json(
    client_session: ClientSession,
    url: str,
    service: str,
    timeout: ClientTimeout,
    params: Mapping[str, str | int] | None = None,
    headers: Mapping[str, str] | None = None,
) -> Any:
    """
    GET ``url`` and decode its JSON body.

    Raises:
        ProviderTransientError: non-2xx status or an empty body.
        aiohttp.ClientError / TimeoutError: transport failures.
        ValueError: body is not JSON.
    """
    async with client_session.get(
        url, params=params, headers=headers, timeout=timeout
    ) as response:
        if not 200 <= response.status < 300:
            raise ProviderTransientError(
                f"{service} returned {response.status}", status=response.status
            )
        data = await response.json(content_type=None)
        if data is None:
            raise ProviderTransientError(f"{service} returned an empty body", status=response.status)
        return data


async def probe_image(
    client_session: ClientSession,
    url: str,
    timeout: ClientTimeout,
    headers: Mapping[str, str] | None = None,
) -> bool:
    """Metadata-only request: True when ``url`` answers 2xx with an image content type."""
    async with client_session.head(
        url, headers=headers, timeout=timeout, allow_redirects=True
    ) as response:
        if not 200 <= response.status < 300:
            return False
        return response.content_type.startswith("image/")


SleepFunc = Callable[[float], Awaitable[None]]


async def get_json_with_retry(
    client_session: ClientSession,
    url: str,
    service: str,
    timeout: ClientTimeout,
    attempts: int,
    base_delay: float,
    headers: Mapping[str, str] | None = None,
    sleep: SleepFunc = asyncio.sleep,
) -> Any:
    """
    ``get_json`` that retries 503s and transport errors with exponential
    backoff (``base_delay * 2**attempt``). 429 and every other status are
    raised on the first attempt.
    """
    for attempt in range(attempts):
        try:
            return await get_json(client_session, url, service, timeout, headers=headers)
        except ProviderTransientError as e:
            if e.status != 503 or attempt == attempts - 1:
                raise
            error: Exception = e
        except (ClientError, TimeoutError) as e:
            if attempt == attempts - 1:
                raise
            error = e
        delay = base_delay * 2**attempt
        logger.info(
            f"{service} request failed, retrying",
            url=url,
            error=str(error),
            attempt=attempt + 1,
            attempts=attempts,
            delay=delay,
        )
        await sleep(delay)
    raise ValueError("attempts must be at least 1")
