# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
HTTP transport for the pipeline.

Endpoints:
    POST   /api/generate                      NDJSON event stream (or one JSON body)
    POST   /api/sessions/{id}/tool_results    resume a session paused on a tool call
    DELETE /api/sessions/{id}                 cancel a session
    GET    /api/models                        registered and loaded models
    GET    /api/devices                       compute devices of this host
    GET    /health
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tokenpipe import __version__
from tokenpipe.api.middleware import RequestLogger
from tokenpipe.api.routes import router
from tokenpipe.config import config
from tokenpipe.pipeline.orchestrator import Pipeline


class ServerState:
    pipeline: Pipeline | None = None
    default_model: str | None = None

    def get_pipeline(self) -> Pipeline:
        if self.pipeline is None:
            self.pipeline = Pipeline(default_model=self.default_model)
        return self.pipeline


state = ServerState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Server lifecycle."""
    yield
    if state.pipeline is not None:
        for stream in state.pipeline.active_streams():
            stream.cancel("Server shutting down")
        state.pipeline.cache.clear()


app = FastAPI(
    title="tokenpipe API",
    description="Backend-agnostic token streaming for local language models",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLogger)

app.include_router(router)


@app.get("/health")
async def health():
    pipeline = state.pipeline
    return {
        "status": "healthy",
        "loaded_models": [h.model_id for h in pipeline.cache.loaded()] if pipeline else [],
        "active_sessions": len(pipeline.active_streams()) if pipeline else 0,
    }


def start_server(host: str | None = None, port: int | None = None, default_model: str | None = None):
    state.default_model = default_model
    uvicorn.run(
        app,
        host=host or config.host,
        port=port or config.port,
        log_level="info",
    )
