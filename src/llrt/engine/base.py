# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""Abstract interface for inference engines."""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from llrt.config import RuntimeSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InferenceParams:
    max_tokens: int = 512
    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.9
    repetition_penalty: float = 1.1
    thinking_mode: bool = True
    seed: int = -1


class StreamCallback(Protocol):
    """Receives a streamed generation: tokens, then one terminal event."""

    def on_token(self, text: str) -> None: ...

    def on_complete(self, full_text: str) -> None: ...

    def on_error(self, message: str) -> None: ...


class CallbackGuard:
    """
    Wraps a caller callback so that exactly one terminal event is delivered.

    Once ``on_complete`` or ``on_error`` has fired every later event is
    dropped, which silences a force-terminated generation that returns from
    its native call after the caller was already told it ended.
    """

    def __init__(self, callback: StreamCallback):
        self._callback = callback
        self._lock = threading.Lock()
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def on_token(self, text: str) -> None:
        if self._finished:
            return
        self._callback.on_token(text)

    def on_complete(self, full_text: str) -> None:
        if self._finish():
            self._callback.on_complete(full_text)

    def on_error(self, message: str) -> None:
        if self._finish():
            self._callback.on_error(message)

    def _finish(self) -> bool:
        with self._lock:
            if self._finished:
                return False
            self._finished = True
            return True


class InferenceEngine(ABC):
    """Interface that all backends must implement."""

    @abstractmethod
    def initialize(self, model_path: Path, settings: RuntimeSettings) -> None:
        """Loads the model and allocates native resources."""
        ...

    @abstractmethod
    def inference(
        self,
        prompt: str,
        params: InferenceParams,
        callback: StreamCallback,
    ) -> None:
        """Starts a streamed generation; returns without waiting for it."""
        ...

    @abstractmethod
    def stop_inference(self) -> None:
        """Requests cooperative cancellation of the current generation."""
        ...

    @abstractmethod
    def release(self) -> None:
        """Frees every native handle. Safe to call more than once."""
        ...

    @property
    @abstractmethod
    def engine_type(self) -> str:
        """Static descriptor of the backend."""
        ...

    @property
    @abstractmethod
    def is_initialized(self) -> bool:
        ...

    @property
    @abstractmethod
    def is_generating(self) -> bool:
        ...

    def reset_model_memory(self) -> None:
        """Drops conversation state kept by the backend."""
        logger.debug("%s keeps no conversation state", self.engine_type)

    def terminate_inference(self, reason: str) -> bool:
        """Ends the current generation by force. True once the engine is idle."""
        self.stop_inference()
        return not self.is_generating
