# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Local REST API over the model runtime.

Implemented endpoints:
    POST /api/generate   streamed (NDJSON) or buffered completion
    POST /api/stop       request a stop of the running generation
    POST /api/unload     stop and unload the current model
    GET  /api/status     lifecycle state
    GET  /api/tags       models available locally
    GET  /api/version
    GET  /health
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from llrt import __version__
from llrt.api.middleware import RequestLogger
from llrt.api.routes_native import router as native_router
from llrt.config import config
from llrt.runtime import Runtime


# Global server state
class ServerState:
    runtime: Runtime | None = None


state = ServerState()


def get_runtime() -> Runtime:
    if state.runtime is None:
        config.ensure_dirs()
        state.runtime = Runtime(config)
    return state.runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Server lifecycle."""
    yield
    if state.runtime is not None:
        state.runtime.shutdown()
        state.runtime = None


app = FastAPI(
    title="llrt API",
    description="Streaming API for locally loaded GGUF models",
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

app.include_router(native_router)


@app.get("/")
async def root():
    return {"status": "llrt is running"}


@app.get("/health")
async def health():
    runtime = get_runtime()
    model_state, model = runtime.manager.snapshot()
    return {
        "status": "healthy",
        "state": model_state.value,
        "current_model": model,
    }


def start_server(host: str | None = None, port: int | None = None, runtime: Runtime | None = None):
    if runtime is not None:
        state.runtime = runtime
    uvicorn.run(
        app,
        host=host or config.host,
        port=port or config.port,
        log_level="info",
    )
