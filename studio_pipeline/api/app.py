"""FastAPI application factory."""

from typing import Optional

from fastapi import FastAPI

from studio_pipeline import __version__
from studio_pipeline.config.models import ServerConfig
from studio_pipeline.pipeline.freshness import FreshnessReporter
from studio_pipeline.pipeline.orchestrator import PipelineOrchestrator

from .routes import router


def create_app(
    orchestrator: PipelineOrchestrator,
    freshness: Optional[FreshnessReporter] = None,
    server_config: Optional[ServerConfig] = None,
) -> FastAPI:
    """Build the HTTP app around an already-wired orchestrator.

    Example:
        >>> app = create_app(orchestrator, FreshnessReporter(orchestrator=orchestrator))
        >>> uvicorn.run(app, host="127.0.0.1", port=8000)
    """
    app = FastAPI(title="Studio Pipeline", version=__version__)
    app.state.orchestrator = orchestrator
    app.state.freshness = freshness or FreshnessReporter(
        orchestrator.app_config.freshness,
        watermarks=orchestrator.watermarks,
        orchestrator=orchestrator,
    )
    app.state.server_config = server_config or orchestrator.app_config.server
    app.include_router(router)
    return app
