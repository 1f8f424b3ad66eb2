from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class ApplicationSettings(BaseModel):
    debug: bool = False
    config_dir: str = "/config"
    port: int = 8000
    version: str = "local"
    log_level: str = "INFO"
    """Logging level (DEBUG, INFO, WARNING, ERROR)"""
    log_format: str = "text"
    """Log format: 'text' for human-readable, 'json' for machine-readable"""
    log_file: str | None = None
    """Optional log file path (relative to config_dir/logs/). If not set, logs to stdout only"""


class ProviderSettings(BaseModel):
    google_books_base_url: str = "https://www.googleapis.com/books/v1/volumes"
    google_books_api_key: str = ""
    """Optional Google Books API key (works without key but has tighter rate limits)"""

    open_library_base_url: str = "https://openlibrary.org"
    open_library_covers_url: str = "https://covers.openlibrary.org"

    request_timeout: float = 10.0
    """Per-call timeout (seconds). A provider that exceeds it counts as failed."""

    user_agent: str = "bookshelf-metadata/1.0"

    work_retry_attempts: int = 2
    """Attempts for Open Library edition/work lookups (503s and network errors only)"""
    work_retry_base_delay: float = 0.5
    """Backoff before the first retry (seconds); doubles per attempt"""

    default_max_results: int = 10
    min_max_results: int = 1
    max_max_results: int = 40


class CacheSettings(BaseModel):
    # TTLs in seconds
    search_ttl: int = 5 * 60
    """Free-text and structured search results"""
    author_ttl: int = 10 * 60
    """Author bibliographies change far less often than search relevance"""
    recommendation_ttl: int = 15 * 60
    """Most expensive to recompute (several provider calls combined)"""
    empty_result_ttl: int = 2 * 60
    """Short TTL for empty results so an unavailable provider is not hammered"""

    maxsize: int | None = 1000
    """Maximum number of cached queries. None = unlimited. LRU eviction."""

    sweep_interval: int = 10 * 60
    """Seconds between background sweeps of expired entries"""


class EnrichmentSettings(BaseModel):
    enabled: bool = True
    enrich_search: bool = True
    enrich_author_books: bool = True
    enrich_recommendations: bool = False

    max_records: int = 12
    """Upper bound on records enriched per aggregated result"""

    pacing_delay: float = 0.3
    """Seconds to wait between successive enrichment calls (rate-limit avoidance)"""

    short_description_length: int = 200
    """Descriptions shorter than this are placeholders (e.g. a first sentence) and may be replaced"""

    exclude_special_editions: bool = True
    """Drop graded readers, abridged and retold editions during deduplication"""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(  # pyright: ignore[reportUnannotatedClassAttribute]
        env_prefix="BOOKSHELF_",
        env_nested_delimiter="__",
        nested_model_default_partial_update=True,
        env_file=(".env.local", ".env"),
        extra="ignore",
    )

    app: ApplicationSettings = ApplicationSettings()
    providers: ProviderSettings = ProviderSettings()
    cache: CacheSettings = CacheSettings()
    enrichment: EnrichmentSettings = EnrichmentSettings()

    def clamp_max_results(self, value: int | None) -> int:
        if value is None:
            return self.providers.default_max_results
        return min(
            max(value, self.providers.min_max_results),
            self.providers.max_max_results,
        )
