# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Inference engine backed by llama.cpp.

This is the backend for GGUF models. Generations run one at a time on a
private single-thread worker. A watchdog (and, when configured, an overall
timeout) can force-terminate a generation whose native decode call hangs,
after which the worker is replaced and the engine is usable again.
"""

import concurrent.futures
import itertools
import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from llrt.config import RuntimeSettings
from llrt.engine.base import CallbackGuard, InferenceEngine, InferenceParams, StreamCallback
from llrt.engine.generation import GenerationLoop
from llrt.engine.health import (
    ForcedTerminationController,
    HealthWatchdog,
    InferenceTimeoutMonitor,
    ThreadHealthMonitor,
)
from llrt.engine.native import INVALID_HANDLE, NativeLibrary
from llrt.engine.params import ParameterResolver, SamplingParams
from llrt.engine.pool import ResourcePool
from llrt.engine.stats import MEMORY_PRESSURE_PERCENT, GenerationSession, system_memory_percent
from llrt.exceptions import (
    EngineNotInitializedError,
    InitializationError,
    ModelArtifactError,
    ModelBusyError,
    TerminationFailedError,
)
from llrt.models.formats import find_gguf, is_gguf_file

logger = logging.getLogger(__name__)


def _default_native() -> NativeLibrary:
    from llrt.engine.llama_native import LlamaCppNative

    return LlamaCppNative()


@dataclass
class _Generation:
    session: GenerationSession
    guard: CallbackGuard
    future: Future | None = None
    watchdog: HealthWatchdog | None = None
    timeout: InferenceTimeoutMonitor | None = None
    cleared: threading.Event = field(default_factory=threading.Event)

    def stop_monitors(self) -> None:
        if self.watchdog is not None:
            self.watchdog.stop()
        if self.timeout is not None:
            self.timeout.cancel()


class _FinishingCallback:
    """Marks the generation finished before its terminal event reaches the caller."""

    def __init__(self, guard: CallbackGuard, finish):
        self._guard = guard
        self._finish = finish

    def on_token(self, text: str) -> None:
        self._guard.on_token(text)

    def on_complete(self, full_text: str) -> None:
        self._finish()
        self._guard.on_complete(full_text)

    def on_error(self, message: str) -> None:
        self._finish()
        self._guard.on_error(message)


class _GenerationTermination:
    """Termination target bound to one generation."""

    def __init__(self, engine: "LlamaCppEngine", generation: _Generation):
        self._engine = engine
        self._generation = generation

    def cancel_task(self) -> bool:
        future = self._generation.future
        return future.cancel() if future is not None else False

    def task_cancelled(self) -> bool:
        future = self._generation.future
        return future is not None and future.cancelled()

    def request_stop(self) -> None:
        self._generation.session.request_stop("terminated")
        self._engine._native.set_should_stop(True)

    def generation_finished(self) -> bool:
        future = self._generation.future
        return future is None or future.done()

    def replace_worker(self) -> None:
        self._engine._replace_worker()

    def reset(self) -> None:
        self._engine._reset_inference_state(self._generation)


class LlamaCppEngine(InferenceEngine):
    """llama.cpp inference engine."""

    ENGINE_TYPE = "LlamaCpp"

    def __init__(self, native: NativeLibrary | None = None):
        self._native = native if native is not None else _default_native()
        self._lock = threading.RLock()
        self._settings = RuntimeSettings()
        self._model = INVALID_HANDLE
        self._context = INVALID_HANDLE
        self._model_file: Path | None = None
        self._pool = ResourcePool(self._native)
        self._resolver: ParameterResolver | None = None
        self._health = ThreadHealthMonitor()
        self._termination = ForcedTerminationController()
        self._loop: GenerationLoop | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._current: _Generation | None = None
        self._generating = threading.Event()
        self._ids = itertools.count(1)
        self._initialized = False
        self.keep_loaded = False
        self.last_used = 0.0

    # --- Lifecycle ---

    def initialize(self, model_path: Path, settings: RuntimeSettings) -> None:
        with self._lock:
            if self._initialized:
                logger.debug("Engine already initialized with %s", self._model_file)
                return

            model_file = find_gguf(model_path)
            if model_file is None:
                raise ModelArtifactError(str(model_path), "No se encontró ningún fichero .gguf")
            try:
                if not is_gguf_file(model_file):
                    raise ModelArtifactError(str(model_file), "El fichero no es un GGUF válido")
            except OSError as e:
                raise ModelArtifactError(str(model_file), str(e)) from e

            threads = max(1, min(settings.threads, os.cpu_count() or 1))
            gpu_layers = -1 if settings.use_gpu else 0

            self._native.backend_init()
            model = self._native.load_model(model_file, gpu_layers)
            if model == INVALID_HANDLE:
                raise InitializationError("load_model", str(model_file))
            context = self._native.create_context(
                model, settings.max_sequence_length, threads, gpu_layers
            )
            if context == INVALID_HANDLE:
                self._native.free_model(model)
                raise InitializationError("create_context", str(model_file))

            self._settings = settings
            self._model = model
            self._context = context
            self._model_file = model_file
            self._pool = ResourcePool(self._native)
            self._pool.preallocate(settings.max_sequence_length)
            model_dir = model_path if model_path.is_dir() else model_path.parent
            self._resolver = ParameterResolver(model_dir, settings)
            self._health = ThreadHealthMonitor(
                check_interval=settings.health_check_interval,
                max_runtime=settings.max_runtime,
                stall_timeout=settings.stall_timeout,
            )
            self._termination = ForcedTerminationController(
                max_retries=settings.max_termination_retries,
                cancel_wait=settings.termination_cancel_wait,
                poll_interval=settings.termination_poll_interval,
                poll_attempts=settings.termination_poll_attempts,
            )
            self._loop = GenerationLoop(
                self._native, self._pool, self._resolver, settings, self._health
            )
            self._executor = self._new_worker()
            self._initialized = True
            self.last_used = time.time()

        logger.info(
            "Loaded %s (ctx=%d, threads=%d, gpu_layers=%d)",
            model_file.name,
            settings.max_sequence_length,
            threads,
            gpu_layers,
        )

    def release(self) -> None:
        with self._lock:
            if not self._initialized and self._model == INVALID_HANDLE:
                return
            generation = self._current

        pending: Future | None = None
        if generation is not None:
            generation.session.request_stop("engine released")
            self._native.set_should_stop(True)
            future = generation.future
            if future is not None:
                concurrent.futures.wait([future], timeout=self._settings.stop_grace_period)
                if not future.done():
                    self._terminate(generation, "engine released")
            with self._lock:
                if self._current is generation:
                    generation.guard.on_error("Engine released")
                    self._clear_generation(generation)
            if future is not None and not future.done():
                pending = future

        with self._lock:
            context, self._context = self._context, INVALID_HANDLE
            model, self._model = self._model, INVALID_HANDLE
            executor, self._executor = self._executor, None
            self._initialized = False
            pool = self._pool

        pool.release_all()
        if pending is not None:
            # The abandoned call may still be inside the native decode
            logger.warning(
                "Generation %d still running, context freed when it returns",
                generation.session.generation_id,
            )
            pending.add_done_callback(lambda _: self._free_native(context, model))
        else:
            self._free_native(context, model)
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
        self._native.set_should_stop(False)
        logger.info("Engine released")

    def _free_native(self, context: int, model: int) -> None:
        if context != INVALID_HANDLE:
            self._native.free_context(context)
        if model != INVALID_HANDLE:
            self._native.free_model(model)

    # --- Generation ---

    def inference(
        self,
        prompt: str,
        params: InferenceParams,
        callback: StreamCallback,
    ) -> None:
        guard = CallbackGuard(callback)
        with self._lock:
            if not self._initialized:
                guard.on_error(str(EngineNotInitializedError()))
                return
            if self._current is not None:
                guard.on_error(str(ModelBusyError(self.model_name, "generating")))
                return

            generation = _Generation(GenerationSession(next(self._ids)), guard)
            self._current = generation
            self._generating.set()
            self._native.set_should_stop(False)
            self.last_used = time.time()
            try:
                generation.future = self._executor.submit(self._run, generation, prompt, params)
            except RuntimeError as e:
                self._clear_generation(generation)
                guard.on_error(f"Generation worker unavailable: {e}")
                return
            self._start_monitors(generation)

    def _run(self, generation: _Generation, prompt: str, params: InferenceParams) -> None:
        session = generation.session
        self._health.start(threading.current_thread())
        sink = _FinishingCallback(generation.guard, lambda: self._finish(generation))
        try:
            self._loop.run(
                self._context,
                prompt,
                params,
                sink,
                session,
                on_unhealthy=lambda reason: self._terminate_async(generation, reason),
            )
        finally:
            self._finish(generation)

    def stop_inference(self) -> None:
        with self._lock:
            generation = self._current
        if generation is None:
            return
        generation.session.request_stop("stop requested")
        self._native.set_should_stop(True)
        logger.info("Stop requested for generation %d", generation.session.generation_id)
        threading.Thread(
            target=self._verify_stopped,
            args=(generation,),
            name="llrt-stop-check",
            daemon=True,
        ).start()

    def _verify_stopped(self, generation: _Generation) -> None:
        future = generation.future
        if future is None:
            return
        done, _ = concurrent.futures.wait([future], timeout=self._settings.stop_grace_period)
        if not done:
            self._terminate(generation, "generation did not stop")

    def terminate_inference(self, reason: str) -> bool:
        """Force-terminates the current generation and waits until it is gone."""
        with self._lock:
            generation = self._current
        if generation is None:
            return True
        self._terminate(generation, reason)
        if generation.guard.finished and not generation.cleared.is_set():
            # Retry budget exhausted: the generation stays stuck
            return False
        # A termination started by the stop check may still be running
        timeout = self._termination.budget + self._settings.stop_grace_period
        return generation.cleared.wait(timeout)

    def reset_model_memory(self) -> None:
        with self._lock:
            if not self._initialized:
                raise EngineNotInitializedError()
            if self._current is not None:
                raise ModelBusyError(self.model_name, "generating")
            self._native.kv_cache_clear(self._context)
            self._termination.reset()
        logger.info("Model memory reset")

    # --- Forced termination ---

    def _terminate(self, generation: _Generation, reason: str, owned: bool = False) -> None:
        """
        Force-terminates ``generation``.

        ``owned`` is set when the generation loop has already handed the call
        over and will not deliver a terminal event itself.
        """
        if not owned and not self._is_current(generation):
            return
        logger.warning("Terminating generation %d: %s", generation.session.generation_id, reason)
        if self._termination.terminate(_GenerationTermination(self, generation)):
            generation.guard.on_error(f"Generation terminated: {reason}")
        elif self._termination.retries >= self._termination.max_retries:
            generation.guard.on_error(str(TerminationFailedError(self._termination.retries)))
        elif owned:
            generation.guard.on_error(f"Generation terminated: {reason}")

    def _terminate_async(self, generation: _Generation, reason: str) -> None:
        threading.Thread(
            target=self._terminate,
            args=(generation, reason, True),
            name="llrt-terminate",
            daemon=True,
        ).start()

    def _replace_worker(self) -> None:
        with self._lock:
            old, self._executor = self._executor, self._new_worker()
        if old is not None:
            old.shutdown(wait=False, cancel_futures=True)

    def _reset_inference_state(self, generation: _Generation) -> None:
        generation.session.abandon()
        with self._lock:
            if self._current is generation:
                self._clear_generation(generation)
            self._native.set_should_stop(False)

    # --- Internals ---

    def _start_monitors(self, generation: _Generation) -> None:
        def is_current() -> bool:
            return self._is_current(generation)

        def terminate(reason: str) -> None:
            self._terminate(generation, reason)

        generation.watchdog = HealthWatchdog(
            self._health, is_current, terminate, self._settings.health_check_interval
        )
        generation.watchdog.start()
        if self._settings.inference_timeout is not None:
            generation.timeout = InferenceTimeoutMonitor(
                self._settings.inference_timeout, is_current, terminate
            )
            generation.timeout.start()

    def _finish(self, generation: _Generation) -> None:
        with self._lock:
            if self._current is generation:
                self._clear_generation(generation)

    def _clear_generation(self, generation: _Generation) -> None:
        generation.stop_monitors()
        self._current = None
        self._generating.clear()
        self._health.clear()
        generation.cleared.set()

    def _is_current(self, generation: _Generation) -> bool:
        with self._lock:
            return self._current is generation

    @staticmethod
    def _new_worker() -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix="llrt-generation")

    # --- Introspection ---

    @property
    def engine_type(self) -> str:
        return self.ENGINE_TYPE

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_generating(self) -> bool:
        return self._generating.is_set()

    @property
    def model_name(self) -> str:
        return self._model_file.name if self._model_file else ""

    @property
    def model_size(self) -> int:
        return self._native.model_size(self._model) if self._model != INVALID_HANDLE else 0

    @property
    def actual_params(self) -> SamplingParams | None:
        return self._resolver.actual_params if self._resolver else None

    @property
    def termination_retries(self) -> int:
        return self._termination.retries

    def is_memory_pressure_high(self) -> bool:
        return system_memory_percent() > MEMORY_PRESSURE_PERCENT
