"""issuetree Web API — FastAPI application over the tree and change tracking."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from issuetree.api.routes_changes import router as changes_router
from issuetree.api.routes_tree import router as tree_router

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    from issuetree import __version__
    from issuetree.config import get_settings
    from issuetree.logging_config import configure_logging

    settings = get_settings()
    configure_logging(
        level=settings.log_level,
        log_file=settings.log_file,
        json_format=settings.log_json,
    )
    app = FastAPI(
        title="issuetree",
        description="Jira issue hierarchy and change tracking API",
        version=__version__,
    )

    # CORS for a local frontend on another port
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(tree_router, prefix="/api", tags=["tree"])
    app.include_router(changes_router, prefix="/api", tags=["changes"])

    @app.get("/api/health")
    async def health():
        return {"ok": True, "version": __version__}

    return app
