"""FastAPI application factory and server entrypoint."""

from __future__ import annotations

from pathlib import Path

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shelfmatch.api.routes import router
from shelfmatch.config import AppSettings, load_settings
from shelfmatch.errors import PersistenceError
from shelfmatch.pipeline.factory import build_executor, build_pipeline
from shelfmatch.pipeline.orchestrator import MatchPipeline
from shelfmatch.storage.store import MatchStore


def create_app(
    db_path: str | Path | None = None,
    config_path: str | Path | None = None,
    pipeline: MatchPipeline | None = None,
) -> FastAPI:
    """Create configured FastAPI app.

    ``pipeline`` overrides the production catalog/comparison wiring; it must use
    the same database as ``db_path``.
    """
    settings: AppSettings = load_settings(config_path)
    app = FastAPI(title="Shelfmatch", version="0.1.0")

    app.state.settings = settings
    app.state.store = pipeline.store if pipeline is not None else MatchStore(db_path or settings.storage.db_path)
    if pipeline is None:
        pipeline = build_pipeline(settings, app.state.store)
    app.state.pipeline = pipeline
    app.state.executor = build_executor(settings, pipeline)

    app.include_router(router)

    @app.on_event("shutdown")
    def _close_clients() -> None:
        app.state.pipeline.close()

    @app.exception_handler(PersistenceError)
    async def _persistence_error(request: Request, exc: PersistenceError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": f"persistence error: {exc}"})

    return app


def run_server(
    host: str,
    port: int,
    db_path: str | Path | None = None,
    config_path: str | Path | None = None,
) -> None:
    """Run API server with uvicorn."""
    app = create_app(db_path=db_path, config_path=config_path)
    uvicorn.run(app, host=host, port=port)
