"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from exchangesync.db.engine import get_engine
from exchangesync.api.routes import oauth as oauth_routes, sync as sync_routes
from exchangesync.practicepanther.sync_service import build_rate_limiter, build_token_manager


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Creates tables and runs migrations on first call (idempotent)
        engine = get_engine()
        # One token cache and one quota view for every request and background sync
        app.state.token_manager = build_token_manager(engine)
        app.state.rate_limiter = build_rate_limiter()
        yield
        await app.state.token_manager.aclose()

    app = FastAPI(
        title="Exchange Sync API",
        description="PracticePanther incremental sync engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(oauth_routes.router, prefix="/oauth", tags=["oauth"])

    return app


# Module-level app instance for uvicorn
app = create_app()
