# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Single entry point for "run this prompt on that model".

``ModelCaller.call_model`` loads or switches models as needed and makes
sure only one logical call owns the engine at a time. A second call for the
model that is already serving a call is rejected; a call for a different
model takes over and preempts the running one. A call that has held the
engine for longer than ``stale_call_timeout`` is considered dead and is
replaced.
"""

import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable

from llrt.config import RuntimeSettings
from llrt.engine.base import CallbackGuard, InferenceParams, StreamCallback
from llrt.exceptions import CallConflictError, LLRTError, LoadTimeoutError
from llrt.lifecycle.manager import ModelManager, ModelState

logger = logging.getLogger(__name__)


@dataclass
class _Call:
    call_id: int
    model_name: str
    prompt: str
    params: InferenceParams
    callback: CallbackGuard
    started_at: float = field(default_factory=time.monotonic)


class _ReleasingCallback:
    def __init__(self, call: _Call, release: Callable[[_Call], None]):
        self._call = call
        self._release = release

    def on_token(self, text: str) -> None:
        self._call.callback.on_token(text)

    def on_complete(self, full_text: str) -> None:
        self._release(self._call)
        self._call.callback.on_complete(full_text)

    def on_error(self, message: str) -> None:
        self._release(self._call)
        self._call.callback.on_error(message)


def default_params(settings: RuntimeSettings) -> InferenceParams:
    return InferenceParams(
        max_tokens=settings.max_new_tokens,
        temperature=settings.manual_temperature,
        top_k=settings.manual_top_k,
        top_p=settings.manual_top_p,
        repetition_penalty=settings.manual_repeat_penalty,
        thinking_mode=not settings.no_thinking,
    )


class ModelCaller:
    def __init__(
        self,
        manager: ModelManager,
        settings: Callable[[], RuntimeSettings],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.manager = manager
        self._settings = settings
        self._clock = clock
        self._lock = threading.Lock()
        self._owner: _Call | None = None
        self._ids = itertools.count(1)
        self._dispatcher = ThreadPoolExecutor(max_workers=4, thread_name_prefix="llrt-call")

    @property
    def call_in_progress(self) -> bool:
        with self._lock:
            return self._owner is not None

    def call_model(
        self,
        model_name: str,
        prompt: str,
        callback: StreamCallback,
        params: InferenceParams | None = None,
    ) -> None:
        """Streams a completion of ``prompt`` by ``model_name`` into ``callback``. Never blocks."""
        settings = self._settings()
        call = _Call(
            call_id=next(self._ids),
            model_name=model_name,
            prompt=prompt,
            params=params or default_params(settings),
            callback=CallbackGuard(callback),
            started_at=self._clock(),
        )

        with self._lock:
            owner = self._owner
            if owner is not None:
                elapsed = call.started_at - owner.started_at
                if elapsed > settings.stale_call_timeout:
                    logger.warning("Resetting stale call %d after %.0fs", owner.call_id, elapsed)
                elif owner.model_name == model_name:
                    logger.warning("Rejecting duplicate call for %s", model_name)
                    call.callback.on_error(str(CallConflictError(elapsed)))
                    return
                else:
                    logger.info(
                        "Call for %s preempts call for %s", model_name, owner.model_name
                    )
            self._owner = call

        self._dispatcher.submit(self._dispatch, call)

    def _release(self, call: _Call) -> None:
        with self._lock:
            if self._owner is call:
                self._owner = None

    def _fail(self, call: _Call, message: str) -> None:
        self._release(call)
        call.callback.on_error(message)

    def _dispatch(self, call: _Call) -> None:
        settings = self._settings()
        try:
            state, current = self.manager.snapshot()
            logger.debug("Dispatching call %d: state=%s current=%s", call.call_id, state.name, current)

            if state == ModelState.BUSY:
                self.manager.stop_inference()
                stopped = self.manager.wait_for_state(
                    (ModelState.READY, ModelState.UNLOADED), settings.stop_wait_timeout
                )
                if not stopped:
                    logger.warning(
                        "Generation ignored the stop for %.1fs, terminating it",
                        settings.stop_wait_timeout,
                    )
                    if not self.manager.terminate_inference("stop timed out"):
                        logger.error("Forced termination did not free the engine")
                    if self.manager.state == ModelState.BUSY:
                        self.manager.force_state(ModelState.READY)
                state, current = self.manager.snapshot()

            if state == ModelState.READY and current == call.model_name:
                self._infer(call)
            elif state == ModelState.READY:
                self.manager.unload_model()
                self._load_and_infer(call, settings)
            elif state == ModelState.LOADING and current == call.model_name:
                self._wait_ready_and_infer(call, settings)
            elif state == ModelState.LOADING:
                self.manager.force_state(ModelState.UNLOADED)
                self._load_and_infer(call, settings)
            else:
                self._load_and_infer(call, settings)
        except LLRTError as e:
            self._fail(call, str(e))
        except Exception as e:
            logger.exception("Call %d failed", call.call_id)
            self._fail(call, f"Error inesperado: {e}")

    def _infer(self, call: _Call) -> None:
        self.manager.inference(
            call.prompt,
            call.params,
            _ReleasingCallback(call, self._release),
            model_name=call.model_name,
        )

    def _load_and_infer(self, call: _Call, settings: RuntimeSettings) -> None:
        future = self.manager.load_model(call.model_name)
        try:
            future.result(timeout=settings.load_wait_timeout)
        except FutureTimeoutError as e:
            raise LoadTimeoutError(call.model_name, settings.load_wait_timeout) from e
        self._infer(call)

    def _wait_ready_and_infer(self, call: _Call, settings: RuntimeSettings) -> None:
        ready = self.manager.wait_for_state(
            (ModelState.READY, ModelState.UNLOADED), settings.load_wait_timeout
        )
        if not ready:
            raise LoadTimeoutError(call.model_name, settings.load_wait_timeout)
        state, current = self.manager.snapshot()
        if state != ModelState.READY or current != call.model_name:
            self._fail(call, f"No se pudo cargar el modelo {call.model_name}")
            return
        self._infer(call)

    # --- Extras ---

    def stop_generation(self) -> None:
        self.manager.stop_inference()

    def list_available_models(self) -> list[str]:
        return self.manager.registry.names()

    def shutdown(self) -> None:
        self.manager.shutdown()
        self._dispatcher.shutdown(wait=False, cancel_futures=True)
