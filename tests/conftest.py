"""
Configuración global de pytest y fixtures compartidos.
"""

import itertools
import tempfile
import threading
import time
from pathlib import Path

import pytest

from llrt.config import LLRTConfig, RuntimeSettings
from llrt.engine.native import (
    INVALID_HANDLE,
    TRUNCATION_NOTICE,
    DecodePosition,
    DecodeStep,
    NativeLibrary,
    StepStatus,
)


class FakeNative(NativeLibrary):
    """
    Librería nativa simulada.

    ``tokens`` es el guion de cada generación: un str es un token, ``None``
    es un fragmento UTF-8 incompleto. Al agotarse el guion se devuelve END.
    """

    def __init__(self):
        self.tokens: list[str | None] = ["Hello", ",", " world"]
        self.step_delay = 0.0
        self.hanging = False
        self.unblock = threading.Event()
        self.entered_hang = threading.Event()
        self.load_result: int | None = None
        self.context_result: int | None = None
        self.prime_result: int | None = None
        self.fail_batch = False
        self.fail_sampler = False
        self.decode_error: Exception | None = None

        self._ids = itertools.count(100)
        self._stop = threading.Event()
        self.backend_inits = 0
        self.models: set[int] = set()
        self.contexts: set[int] = set()
        self.batches: dict[int, int] = {}
        self.samplers: dict[int, object] = {}
        self.freed_batches: list[int] = []
        self.freed_samplers: list[int] = []
        self.freed_contexts: list[int] = []
        self.freed_models: list[int] = []
        self.sampler_params: list[object] = []
        self.primed: list[str] = []
        self.kv_clears = 0
        self.decode_calls = 0

    def backend_init(self) -> None:
        self.backend_inits += 1

    def load_model(self, path: Path, gpu_layers: int) -> int:
        if self.load_result is not None:
            return self.load_result
        handle = next(self._ids)
        self.models.add(handle)
        return handle

    def create_context(self, model: int, ctx_size: int, threads: int, gpu_layers: int) -> int:
        if self.context_result is not None:
            return self.context_result
        handle = next(self._ids)
        self.contexts.add(handle)
        return handle

    def create_batch(self, size: int) -> int:
        if self.fail_batch:
            return INVALID_HANDLE
        handle = next(self._ids)
        self.batches[handle] = size
        return handle

    def create_sampler(self, params=None) -> int:
        if self.fail_sampler:
            return INVALID_HANDLE
        handle = next(self._ids)
        self.samplers[handle] = params
        self.sampler_params.append(params)
        return handle

    def prime(self, context: int, batch: int, prompt: str, max_tokens: int) -> int:
        self.primed.append(prompt)
        if self.prime_result is not None:
            return self.prime_result
        return len(prompt.split())

    def decode_step(self, context, batch, sampler, max_tokens, position: DecodePosition) -> DecodeStep:
        self.decode_calls += 1
        if self.hanging:
            self.entered_hang.set()
            self.unblock.wait(30)
        if self.decode_error is not None:
            raise self.decode_error
        if self._stop.is_set():
            return DecodeStep(StepStatus.STOPPED)
        if self.step_delay:
            time.sleep(self.step_delay)

        index = position.generated
        if index >= len(self.tokens):
            return DecodeStep(StepStatus.END)
        if index >= max_tokens:
            if not position.truncation_sent:
                position.truncation_sent = True
                return DecodeStep(StepStatus.TRUNCATED, TRUNCATION_NOTICE)
            return DecodeStep(StepStatus.END)
        position.current += 1
        token = self.tokens[index]
        if token is None:
            return DecodeStep(StepStatus.PENDING)
        return DecodeStep(StepStatus.TOKEN, token)

    def kv_cache_clear(self, context: int) -> bool:
        self.kv_clears += 1
        return context in self.contexts

    def free_batch(self, batch: int) -> None:
        self.freed_batches.append(batch)
        self.batches.pop(batch, None)

    def free_sampler(self, sampler: int) -> None:
        self.freed_samplers.append(sampler)
        self.samplers.pop(sampler, None)

    def free_context(self, context: int) -> None:
        self.freed_contexts.append(context)
        self.contexts.discard(context)

    def free_model(self, model: int) -> None:
        self.freed_models.append(model)
        self.models.discard(model)

    def model_size(self, model: int) -> int:
        return 1024 if model in self.models else 0

    def set_should_stop(self, value: bool) -> None:
        if value:
            self._stop.set()
        else:
            self._stop.clear()

    def get_should_stop(self) -> bool:
        return self._stop.is_set()


class RecordingCallback:
    """Callback que registra todos los eventos de una generación."""

    def __init__(self):
        self.tokens: list[str] = []
        self.completed: list[str] = []
        self.errors: list[str] = []
        self.done = threading.Event()

    def on_token(self, text: str) -> None:
        self.tokens.append(text)

    def on_complete(self, full_text: str) -> None:
        self.completed.append(full_text)
        self.done.set()

    def on_error(self, message: str) -> None:
        self.errors.append(message)
        self.done.set()

    def wait(self, timeout: float = 5.0) -> bool:
        return self.done.wait(timeout)

    @property
    def terminal_events(self) -> int:
        return len(self.completed) + len(self.errors)


@pytest.fixture(autouse=True)
def reset_native_stop_flag():
    """El flag de parada nativo es global al proceso."""
    from llrt.engine import native

    native.set_should_stop(False)
    yield
    native.set_should_stop(False)


@pytest.fixture
def temp_dir():
    """Crea un directorio temporal para tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_config(temp_dir, monkeypatch):
    """Crea una configuración temporal aislada para tests."""
    test_config = LLRTConfig(home_dir=temp_dir)
    test_config.ensure_dirs()

    import llrt.config
    monkeypatch.setattr(llrt.config, "config", test_config)

    import llrt.cli.main
    monkeypatch.setattr(llrt.cli.main, "config", test_config)

    import llrt.api.server
    monkeypatch.setattr(llrt.api.server, "config", test_config)

    yield test_config


@pytest.fixture
def fast_settings():
    """Ajustes con esperas cortas para tests."""
    return RuntimeSettings(
        max_sequence_length=2048,
        threads=2,
        max_new_tokens=64,
        load_wait_timeout=5.0,
        stop_wait_timeout=2.0,
        poll_interval=0.01,
        unload_settle_delay=0.01,
        health_check_interval=0.05,
        termination_cancel_wait=0.01,
        termination_poll_interval=0.01,
        termination_poll_attempts=3,
        stop_grace_period=0.5,
    )


@pytest.fixture
def fake_native():
    native = FakeNative()
    yield native
    # Libera cualquier llamada "colgada" abandonada por un test
    native.hanging = False
    native.unblock.set()


@pytest.fixture
def recorder():
    """Fábrica de callbacks de registro."""
    return RecordingCallback


@pytest.fixture
def make_model(temp_config):
    """Crea un directorio de modelo GGUF falso en el directorio de modelos."""

    def _make(name: str = "m1", sidecar: str | None = None, sidecar_name: str = "params") -> Path:
        model_dir = temp_config.models_dir / name
        model_dir.mkdir(parents=True, exist_ok=True)
        (model_dir / f"{name}.gguf").write_bytes(b"GGUF" + b"\x00" * 32)
        if sidecar is not None:
            (model_dir / sidecar_name).write_text(sidecar)
        return model_dir

    return _make


@pytest.fixture
def engine(fake_native, make_model, fast_settings):
    """Motor llama.cpp inicializado sobre la librería simulada."""
    from llrt.engine.llama_cpp import LlamaCppEngine

    eng = LlamaCppEngine(fake_native)
    eng.initialize(make_model("m1"), fast_settings)
    yield eng
    fake_native.hanging = False
    fake_native.unblock.set()
    eng.release()


@pytest.fixture
def runtime(temp_config, fast_settings, fake_native):
    """Runtime completo con la librería simulada."""
    from llrt.runtime import Runtime

    rt = Runtime(temp_config, settings=fast_settings, native=fake_native)
    yield rt
    fake_native.hanging = False
    fake_native.unblock.set()
    rt.shutdown()
