"""Main ASGI application entry point.

Usage:
    # Settings come from environment variables or .env
    python -m kb_sync.app

    # Or point uvicorn at the factory
    uvicorn kb_sync.app:create_app --factory
"""

import logging

from starlette.applications import Starlette

from kb_sync.app_builder import AppBuilder
from kb_sync.config import Settings


logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> Starlette:
    """Create the sync service application."""
    return AppBuilder(settings).build()


def main() -> None:
    """Main entry point for the sync server."""
    import uvicorn

    settings = Settings()
    app = create_app(settings)

    logger.info("Starting kb-sync on %s:%d (database %s)", settings.host, settings.port, settings.database_path)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        log_config=None,  # Don't let uvicorn override our logging config
    )


if __name__ == "__main__":
    main()
