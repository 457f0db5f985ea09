# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Model state machine.

    UNLOADED -> LOADING -> READY <-> BUSY
        ^          |         |        |
        +----------+---------+--------+   (load failure / unload)

One ``ModelManager`` owns one engine at a time. Loads run on a private
single-thread loader; a load only commits if no newer load or unload has
superseded it in the meantime.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable

from llrt.config import RuntimeSettings
from llrt.engine.base import InferenceEngine, InferenceParams, StreamCallback
from llrt.engine.selector import select_engine
from llrt.exceptions import (
    ConcurrencyConflictError,
    InvalidStateError,
    ModelNotFoundError,
)
from llrt.models.registry import ModelRegistry

logger = logging.getLogger(__name__)


class ModelState(Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    BUSY = "busy"


class _ReturnToReady:
    """Forwards a generation's events and frees the BUSY state on its terminal event."""

    def __init__(self, callback: StreamCallback, done: Callable[[], None]):
        self._callback = callback
        self._done = done

    def on_token(self, text: str) -> None:
        self._callback.on_token(text)

    def on_complete(self, full_text: str) -> None:
        self._done()
        self._callback.on_complete(full_text)

    def on_error(self, message: str) -> None:
        self._done()
        self._callback.on_error(message)


class ModelManager:
    """Serializes load, unload and inference requests over a single engine."""

    def __init__(
        self,
        registry: ModelRegistry,
        settings: Callable[[], RuntimeSettings],
        engine_factory: Callable[[Path], InferenceEngine] = select_engine,
    ):
        self.registry = registry
        self._settings = settings
        self._engine_factory = engine_factory
        self._cond = threading.Condition()
        self._state = ModelState.UNLOADED
        self._current_model: str | None = None
        self._engine: InferenceEngine | None = None
        self._load_future: Future | None = None
        self._load_token = 0
        self._inference_token = 0
        self._loader = ThreadPoolExecutor(max_workers=1, thread_name_prefix="llrt-loader")

    # --- State ---

    @property
    def state(self) -> ModelState:
        with self._cond:
            return self._state

    @property
    def current_model(self) -> str | None:
        with self._cond:
            return self._current_model

    @property
    def engine(self) -> InferenceEngine | None:
        with self._cond:
            return self._engine

    @property
    def is_ready(self) -> bool:
        return self.state == ModelState.READY

    def snapshot(self) -> tuple[ModelState, str | None]:
        with self._cond:
            return self._state, self._current_model

    def _set_state(self, state: ModelState) -> None:
        if state != self._state:
            logger.info("Model state %s -> %s", self._state.name, state.name)
        self._state = state
        self._cond.notify_all()

    def force_state(self, state: ModelState) -> None:
        """Overrides the state as a recovery measure."""
        with self._cond:
            logger.warning("Forced state correction %s -> %s", self._state.name, state.name)
            if state == ModelState.UNLOADED:
                self._load_token += 1
                self._current_model = None
            self._set_state(state)

    def wait_for_state(self, states: Iterable[ModelState], timeout: float) -> bool:
        """Waits until the state is one of ``states``. False on timeout."""
        wanted = set(states)
        poll = max(self._settings().poll_interval, 0.001)
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._state not in wanted:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(min(poll, remaining))
            return True

    # --- Load / unload ---

    def load_model(self, name: str) -> Future:
        """Starts loading ``name``; the returned future resolves once it is READY."""
        with self._cond:
            if self._current_model == name:
                if self._state == ModelState.LOADING and self._load_future is not None:
                    logger.debug("Model %s is already loading", name)
                    return self._load_future
                if self._state in (ModelState.READY, ModelState.BUSY):
                    done: Future = Future()
                    done.set_result(None)
                    return done
            if self._state in (ModelState.LOADING, ModelState.BUSY):
                raise InvalidStateError("load_model", self._state.name, "UNLOADED o READY")

            self._load_token += 1
            token = self._load_token
            self._current_model = name
            self._set_state(ModelState.LOADING)
            self._load_future = self._loader.submit(self._load, name, token)
            return self._load_future

    def _load(self, name: str, token: int) -> None:
        settings = self._settings()
        model_dir = self.registry.path_for(name)
        with self._cond:
            previous, self._engine = self._engine, None
        try:
            if previous is not None:
                previous.release()
            if not model_dir.is_dir():
                raise ModelNotFoundError(name)
            engine = self._engine_factory(model_dir)
            engine.initialize(model_dir, settings)
        except Exception as e:
            logger.error("Loading %s failed: %s", name, e)
            with self._cond:
                if token == self._load_token:
                    self._current_model = None
                    self._set_state(ModelState.UNLOADED)
            raise

        with self._cond:
            superseded = token != self._load_token
            if not superseded:
                self._engine = engine
                self._set_state(ModelState.READY)
        if superseded:
            logger.warning("Load of %s was superseded, releasing it", name)
            engine.release()
            raise ConcurrencyConflictError(f"Carga de {name} reemplazada por otra solicitud")
        logger.info("Model %s ready (%s)", name, engine.engine_type)

    def unload_model(self) -> None:
        with self._cond:
            state = self._state
            engine, self._engine = self._engine, None
            self._load_token += 1
        if engine is not None:
            if state == ModelState.BUSY:
                engine.stop_inference()
                time.sleep(self._settings().unload_settle_delay)
            engine.release()
        with self._cond:
            self._current_model = None
            self._set_state(ModelState.UNLOADED)

    # --- Inference ---

    def inference(
        self,
        prompt: str,
        params: InferenceParams,
        callback: StreamCallback,
        model_name: str | None = None,
    ) -> None:
        """Runs a generation on the loaded model. Requires READY."""
        with self._cond:
            if self._state != ModelState.READY or self._engine is None:
                raise InvalidStateError("inference", self._state.name, "READY")
            if model_name is not None and model_name != self._current_model:
                raise ConcurrencyConflictError(
                    f"Modelo cargado: {self._current_model}, solicitado: {model_name}"
                )
            self._inference_token += 1
            token = self._inference_token
            engine = self._engine
            self._set_state(ModelState.BUSY)

        engine.inference(prompt, params, _ReturnToReady(callback, lambda: self._inference_done(token)))

    def _inference_done(self, token: int) -> None:
        with self._cond:
            if token == self._inference_token and self._state == ModelState.BUSY:
                self._set_state(ModelState.READY)

    def stop_inference(self) -> None:
        """Requests a stop; BUSY ends when the generation reports its terminal event."""
        engine = self.engine
        if engine is not None:
            engine.stop_inference()

    def terminate_inference(self, reason: str) -> bool:
        """Forces the running generation to end. True once the engine is idle."""
        engine = self.engine
        if engine is None:
            return True
        return engine.terminate_inference(reason)

    def reset_model_memory(self) -> None:
        with self._cond:
            if self._state != ModelState.READY or self._engine is None:
                raise InvalidStateError("reset_model_memory", self._state.name, "READY")
            engine = self._engine
        engine.reset_model_memory()

    def shutdown(self) -> None:
        self.unload_model()
        self._loader.shutdown(wait=False, cancel_futures=True)
