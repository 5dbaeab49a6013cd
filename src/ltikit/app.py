"""
FastAPI application factory.

The database pool, the toolkit and its expiration sweep are all created in
the lifespan so they live in the server's event loop.
"""

from dotenv import load_dotenv

# Load .env file before any other imports that might need env vars
load_dotenv()

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from ltikit.consumer import ProviderGradeHandler
from ltikit.database import close_database, get_session_factory, init_database
from ltikit.launch import DeeplinkHandler, LaunchHandler
from ltikit.log import configure_logging
from ltikit.routes import clear_toolkit, include_lti_routes, init_toolkit
from ltikit.settings import Settings, get_settings
from ltikit.toolkit import LTIToolkit

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    handle_launch: LaunchHandler | None = None,
    handle_deeplink: DeeplinkHandler | None = None,
    post_provider_grade: ProviderGradeHandler | None = None,
) -> FastAPI:
    """Create an application serving the LTI endpoints with the given callbacks."""
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await init_database(settings.database_url, create_tables=settings.env == "local")
        toolkit = LTIToolkit.from_session_factory(
            get_session_factory(),
            settings=settings,
            handle_launch=handle_launch,
            handle_deeplink=handle_deeplink,
            post_provider_grade=post_provider_grade,
        )
        init_toolkit(toolkit)
        await toolkit.start()
        logger.info("LTI endpoints ready at %s", settings.url_for(settings.route_prefix))

        yield

        await toolkit.stop()
        clear_toolkit()
        await close_database()

    app = FastAPI(
        title=settings.title,
        description=settings.description,
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )
    include_lti_routes(app, settings)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app
