from aiohttp import ClientSession
from fastapi import Request

from bookshelf.internal.metadata.aggregator import MetadataAggregator


def get_connection(request: Request) -> ClientSession:
    """Shared aiohttp session opened by the application lifespan."""
    return request.app.state.client_session


def get_aggregator(request: Request) -> MetadataAggregator:
    return request.app.state.aggregator
