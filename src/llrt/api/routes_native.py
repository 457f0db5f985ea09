# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Endpoints de generación y control del ciclo de vida del modelo.
El formato de /api/generate sigue el estilo NDJSON de Ollama.
"""

import asyncio
import json
import time
from dataclasses import replace

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from llrt import __version__
from llrt.engine.base import InferenceParams
from llrt.lifecycle.caller import default_params

router = APIRouter()


class GenerateRequest(BaseModel):
    model: str
    prompt: str
    stream: bool = True
    options: dict | None = None


def _get_runtime():
    """Import runtime lazily to avoid circular imports."""
    from llrt.api.server import get_runtime

    return get_runtime()


def _options_to_params(options: dict | None, base: InferenceParams) -> InferenceParams:
    opts = options or {}
    return replace(
        base,
        max_tokens=int(opts.get("num_predict", base.max_tokens)),
        thinking_mode=bool(opts.get("think", base.thinking_mode)),
        seed=int(opts.get("seed", base.seed)),
    )


class _QueueCallback:
    """Moves engine events from worker threads onto the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue):
        self._loop = loop
        self._queue = queue

    def on_token(self, text: str) -> None:
        self._put(("token", text))

    def on_complete(self, full_text: str) -> None:
        self._put(("complete", full_text))

    def on_error(self, message: str) -> None:
        self._put(("error", message))

    def _put(self, event: tuple[str, str]) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)


def _timestamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


@router.post("/api/generate")
async def api_generate(req: GenerateRequest):
    runtime = _get_runtime()
    params = _options_to_params(req.options, default_params(runtime.settings))

    queue: asyncio.Queue = asyncio.Queue()
    callback = _QueueCallback(asyncio.get_running_loop(), queue)
    runtime.caller.call_model(req.model, req.prompt, callback, params)

    if req.stream:
        async def stream():
            while True:
                kind, text = await queue.get()
                if kind == "token":
                    yield json.dumps({
                        "model": req.model,
                        "created_at": _timestamp(),
                        "response": text,
                        "done": False,
                    }) + "\n"
                    continue
                final = {
                    "model": req.model,
                    "created_at": _timestamp(),
                    "response": "",
                    "done": True,
                }
                if kind == "error":
                    final["error"] = text
                yield json.dumps(final) + "\n"
                return

        return StreamingResponse(stream(), media_type="application/x-ndjson")

    while True:
        kind, text = await queue.get()
        if kind == "complete":
            return {
                "model": req.model,
                "created_at": _timestamp(),
                "response": text,
                "done": True,
            }
        if kind == "error":
            raise HTTPException(status_code=500, detail=text)


@router.post("/api/stop")
async def api_stop():
    """Solicita detener la generación en curso."""
    _get_runtime().caller.stop_generation()
    return {"status": "stopping"}


@router.post("/api/unload")
async def api_unload():
    runtime = _get_runtime()
    await run_in_threadpool(runtime.manager.unload_model)
    return {"status": "unloaded"}


@router.get("/api/status")
async def api_status():
    runtime = _get_runtime()
    model_state, model = runtime.manager.snapshot()
    engine = runtime.manager.engine
    return {
        "state": model_state.value,
        "model": model,
        "call_in_progress": runtime.caller.call_in_progress,
        "engine": engine.engine_type if engine is not None else None,
        "generating": bool(engine is not None and engine.is_generating),
        "keep_loaded": bool(getattr(engine, "keep_loaded", False)),
        "last_used": getattr(engine, "last_used", None),
        "memory_pressure": (
            engine.is_memory_pressure_high()
            if hasattr(engine, "is_memory_pressure_high")
            else False
        ),
    }


@router.get("/api/tags")
async def api_tags():
    """Lista modelos locales (compatible con Ollama)."""
    runtime = _get_runtime()
    return {
        "models": [
            {
                "name": m.name,
                "model": m.name,
                "modified_at": m.modified_at,
                "size": m.size_bytes,
                "details": {"format": m.format.value},
            }
            for m in runtime.registry.list_all()
        ]
    }


@router.get("/api/version")
async def api_version():
    return {"version": __version__}
