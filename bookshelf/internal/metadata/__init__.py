"""
Metadata aggregation for bookshelf.

Google Books is the primary catalog, Open Library the secondary one, and the
Open Library Covers service backs cover recovery. Results are deduplicated,
enriched and cached behind a single aggregator.
"""

from .aggregator import MetadataAggregator, create_aggregator
from .covers import OpenLibraryCoversProvider
from .dedup import deduplicate
from .enricher import MetadataEnricher
from .google_books import GoogleBooksProvider
from .open_library import OpenLibraryProvider

__all__ = [
    "GoogleBooksProvider",
    "MetadataAggregator",
    "MetadataEnricher",
    "OpenLibraryCoversProvider",
    "OpenLibraryProvider",
    "create_aggregator",
    "deduplicate",
]
