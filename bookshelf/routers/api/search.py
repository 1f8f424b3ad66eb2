from typing import Annotated, Optional

from aiohttp import ClientSession
from fastapi import APIRouter, Depends, HTTPException, Query

from bookshelf.internal.metadata.aggregator import MetadataAggregator
from bookshelf.internal.models import BookRecord
from bookshelf.internal.queries import SearchQuery
from bookshelf.util.connection import get_aggregator, get_connection
from bookshelf.util.exceptions import ClientQueryError
from bookshelf.util.log import logger

router = APIRouter(prefix="/search", tags=["Search"])


@router.get("", response_model=list[BookRecord])
async def search_books(
    client_session: Annotated[ClientSession, Depends(get_connection)],
    aggregator: Annotated[MetadataAggregator, Depends(get_aggregator)],
    query: Annotated[str | None, Query(alias="q")] = None,
    author: Optional[str] = None,
    title: Optional[str] = None,
    isbn: Optional[str] = None,
    lang: Optional[str] = None,
    max_results: Annotated[int | None, Query(alias="maxResults")] = None,
):
    """
    Free-text or structured book search.

    At least one of ``q``, ``title``, ``author`` or ``isbn`` is required.
    Provider outages never fail the request; they only shrink the result.
    """
    try:
        search_query = SearchQuery.build(
            text=query,
            author=author,
            title=title,
            isbn=isbn,
            language=lang,
            max_results=aggregator.settings.clamp_max_results(max_results),
        )
    except ClientQueryError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return await aggregator.search(client_session, search_query)


@router.get("/authors/{author_name}", response_model=list[BookRecord])
async def author_books(
    author_name: str,
    client_session: Annotated[ClientSession, Depends(get_connection)],
    aggregator: Annotated[MetadataAggregator, Depends(get_aggregator)],
    refresh: bool = False,
):
    try:
        return await aggregator.author_books(client_session, author_name, refresh=refresh)
    except ClientQueryError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/recommendations", response_model=list[BookRecord])
async def recommendations(
    client_session: Annotated[ClientSession, Depends(get_connection)],
    aggregator: Annotated[MetadataAggregator, Depends(get_aggregator)],
    authors: Annotated[list[str], Query()] = [],
    genres: Annotated[list[str], Query()] = [],
    languages: Annotated[list[str], Query()] = [],
):
    """
    Books related to the given authors and genres.

    Repeat a parameter to pass several values, e.g.
    ``?authors=Frank Herbert&authors=Ursula K. Le Guin&genres=science fiction``.
    """
    try:
        return await aggregator.recommendations(client_session, authors, genres, languages)
    except ClientQueryError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/cache/authors/{author_name}")
async def clear_author_cache(
    author_name: str,
    aggregator: Annotated[MetadataAggregator, Depends(get_aggregator)],
):
    """Drop the cached bibliography for one author so the next read refetches it."""
    cleared = aggregator.clear_author(author_name)
    logger.info("Cleared author cache", author=author_name, cleared=cleared)
    return {"success": True, "cleared": cleared}


@router.get("/cache/stats")
async def get_cache_stats(
    aggregator: Annotated[MetadataAggregator, Depends(get_aggregator)],
):
    """Size, keys and hit/miss counters of the response cache."""
    return aggregator.cache.stats()
