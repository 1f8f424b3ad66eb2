from contextlib import asynccontextmanager

from aiohttp import ClientSession, ClientTimeout
from fastapi import APIRouter, FastAPI

from bookshelf.internal.env_settings import Settings
from bookshelf.internal.metadata.aggregator import create_aggregator
from bookshelf.routers.api import search
from bookshelf.util.cache import CacheSweeper
from bookshelf.util.log import logger, setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    setup_logging(settings.app)

    aggregator = create_aggregator(settings)
    sweeper = CacheSweeper(aggregator.cache, settings.cache.sweep_interval)

    async with ClientSession(
        timeout=ClientTimeout(total=settings.providers.request_timeout)
    ) as client_session:
        app.state.client_session = client_session
        app.state.aggregator = aggregator
        sweeper.start()
        logger.info("bookshelf started", version=settings.app.version)
        try:
            yield
        finally:
            await sweeper.stop()
            aggregator.cache.flush()
            logger.info("bookshelf stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()
    app = FastAPI(
        title="bookshelf",
        version=settings.app.version,
        debug=settings.app.debug,
        lifespan=lifespan,
    )
    app.state.settings = settings

    api_router = APIRouter(prefix="/api")
    api_router.include_router(search.router)
    app.include_router(api_router)
    return app


app = create_app()
