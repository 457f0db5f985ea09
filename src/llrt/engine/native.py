# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Handle-based facade over the native inference library.

The rest of the runtime never touches ctypes pointers: every native object
(model, context, batch, sampler) is exposed as a non-zero integer handle,
with ``INVALID_HANDLE`` (0) meaning "not allocated". The facade also owns
the process-wide stop flag that the decode step polls, since the native
decode call has no cancellation primitive of its own.

The llama.cpp implementation lives in ``llrt.engine.llama_native`` so that
this module can be imported without the native library installed.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from llrt.engine.params import SamplingParams

INVALID_HANDLE = 0

TRUNCATION_NOTICE = "\n[output limit reached, response truncated]"

# Process-wide native stop flag
_should_stop = threading.Event()


def set_should_stop(value: bool) -> None:
    if value:
        _should_stop.set()
    else:
        _should_stop.clear()


def get_should_stop() -> bool:
    return _should_stop.is_set()


class StepStatus(Enum):
    TOKEN = "token"
    PENDING = "pending"  # incomplete multi-byte sequence, nothing to emit yet
    END = "end"
    TRUNCATED = "truncated"
    STOPPED = "stopped"


@dataclass(frozen=True)
class DecodeStep:
    status: StepStatus
    text: str = ""


@dataclass
class DecodePosition:
    """Mutable decode position shared between prime and decode steps."""

    current: int = 0
    start: int = 0
    truncation_sent: bool = False

    @property
    def generated(self) -> int:
        return self.current - self.start


class NativeLibrary(ABC):
    """Surface of the native library consumed by the engine."""

    @abstractmethod
    def backend_init(self) -> None:
        """Initializes the backend. Idempotent, process-wide."""
        ...

    @abstractmethod
    def load_model(self, path: Path, gpu_layers: int) -> int: ...

    @abstractmethod
    def create_context(self, model: int, ctx_size: int, threads: int, gpu_layers: int) -> int: ...

    @abstractmethod
    def create_batch(self, size: int) -> int: ...

    @abstractmethod
    def create_sampler(self, params: SamplingParams | None = None) -> int:
        """Creates a sampler; ``None`` means greedy default sampling."""
        ...

    @abstractmethod
    def prime(self, context: int, batch: int, prompt: str, max_tokens: int) -> int:
        """Tokenizes and ingests the prompt. Returns the token count or -1."""
        ...

    @abstractmethod
    def decode_step(
        self,
        context: int,
        batch: int,
        sampler: int,
        max_tokens: int,
        position: DecodePosition,
    ) -> DecodeStep: ...

    @abstractmethod
    def kv_cache_clear(self, context: int) -> bool: ...

    @abstractmethod
    def free_batch(self, batch: int) -> None: ...

    @abstractmethod
    def free_sampler(self, sampler: int) -> None: ...

    @abstractmethod
    def free_context(self, context: int) -> None: ...

    @abstractmethod
    def free_model(self, model: int) -> None: ...

    def model_size(self, model: int) -> int:
        return 0

    def set_should_stop(self, value: bool) -> None:
        set_should_stop(value)

    def get_should_stop(self) -> bool:
        return get_should_stop()


