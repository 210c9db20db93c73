"""
FastAPI application entrypoint for the activity sync engine.
"""

from __future__ import annotations

from fastapi import FastAPI

from activity_sync.api.routes import router as api_router
from activity_sync.core.config import get_settings
from activity_sync.core.logging import configure_logging


def create_app() -> FastAPI:
    """Factory for the FastAPI application."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Activity Sync Engine",
        version="0.1.0",
        description="Cached GitHub and Spotify activity with a scheduled sync trigger.",
    )
    app.include_router(api_router, prefix="/api")
    return app


app = create_app()

__all__ = ["app", "create_app"]
