"""
Open Library Covers provider: cover images only.

Covers are addressed by identifier (ISBN, cover id, edition OLID). A URL is
only trusted after a HEAD probe answers with an image; ``default=false``
makes the service return 404 instead of a blank placeholder.
"""
from aiohttp import ClientError, ClientSession, ClientTimeout

from bookshelf.internal.env_settings import ProviderSettings
from bookshelf.internal.metadata.http import probe_image
from bookshelf.internal.models import ProviderEnum
from bookshelf.internal.normalize import clean_isbn
from bookshelf.util.exceptions import handle_external_api_error
from bookshelf.util.log import logger

COVER_STRATEGIES = ("isbn", "olid")


def open_library_cover_url(base_url: str, key: str, value: str | int, size: str = "L") -> str:
    """``key`` is one of ``isbn``, ``id``, ``olid``, ``oclc``."""
    return f"{base_url.rstrip('/')}/b/{key}/{value}-{size}.jpg"


class OpenLibraryCoversProvider:
    name = ProviderEnum.open_library_covers
    service = "Open Library Covers"

    base_url: str
    timeout: ClientTimeout
    headers: dict[str, str]

    def __init__(self, settings: ProviderSettings):
        self.base_url = settings.open_library_covers_url
        self.timeout = ClientTimeout(total=settings.request_timeout)
        self.headers = {"User-Agent": settings.user_agent}

    def cover_url(self, key: str, value: str | int) -> str:
        return open_library_cover_url(self.base_url, key, value)

    def candidate_urls(
        self,
        isbn: str | None = None,
        olid: str | None = None,
        fallback_urls: dict[str, str] | None = None,
    ) -> list[str]:
        """Ordered, de-duplicated cover URLs to probe: ISBN first, then OLID."""
        candidates: list[str] = []
        fallback_urls = fallback_urls or {}
        for strategy in COVER_STRATEGIES:
            if fallback_urls.get(strategy):
                candidates.append(fallback_urls[strategy])
        isbn = clean_isbn(isbn)
        if isbn:
            candidates.append(self.cover_url("isbn", isbn))
        if olid:
            candidates.append(self.cover_url("olid", olid))
        return list(dict.fromkeys(candidates))

    async def cover_exists(self, client_session: ClientSession, url: str) -> bool:
        """HEAD-probe one candidate URL. Never raises."""
        probe_url = url if "default=" in url else f"{url}?default=false"
        try:
            exists = await probe_image(client_session, probe_url, self.timeout, self.headers)
        except (ClientError, TimeoutError) as e:
            handle_external_api_error(e, self.service, "probe cover", url=url)
            return False
        if not exists:
            logger.debug("No cover at candidate URL", url=url)
        return exists
