# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""Per-generation bookkeeping and the statistics report appended to each response."""

import os
import threading
import time
from dataclasses import dataclass, field

import psutil

from llrt.config import RuntimeSettings
from llrt.engine.params import SamplingParams

BYTES_PER_MB = 1024 * 1024
MEMORY_SAMPLE_EVERY = 16
MEMORY_PRESSURE_PERCENT = 85.0


def process_memory_mb() -> float:
    return psutil.Process(os.getpid()).memory_info().rss / BYTES_PER_MB


def system_memory_percent() -> float:
    return psutil.virtual_memory().percent


@dataclass
class GenerationSession:
    generation_id: int
    started_at: float = field(default_factory=time.perf_counter)
    tokens: int = 0
    fragments: int = 0
    memory_peak_mb: float = 0.0
    stop_event: threading.Event = field(default_factory=threading.Event)
    stop_reason: str | None = None
    abandoned: bool = False

    def record_token(self) -> None:
        self.tokens += 1
        if self.tokens % MEMORY_SAMPLE_EVERY == 0:
            self.sample_memory()

    def sample_memory(self) -> None:
        self.memory_peak_mb = max(self.memory_peak_mb, process_memory_mb())

    def request_stop(self, reason: str) -> None:
        if self.stop_reason is None:
            self.stop_reason = reason
        self.stop_event.set()

    def abandon(self) -> None:
        """Marks a force-terminated session whose thread may still be running."""
        self.request_stop("terminated")
        self.abandoned = True

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    @property
    def elapsed(self) -> float:
        return time.perf_counter() - self.started_at

    @property
    def tokens_per_second(self) -> float:
        elapsed = self.elapsed
        return self.tokens / elapsed if elapsed > 0 else 0.0


def format_report(
    session: GenerationSession,
    settings: RuntimeSettings,
    params: SamplingParams,
    source: str,
) -> str:
    """Builds the statistics block appended to a finished response."""
    elapsed = session.elapsed
    rate = session.tokens / elapsed if elapsed > 0 else 0.0
    lines = [
        "",
        "",
        "---",
        (
            f"tokens: {session.tokens} • time: {elapsed:.2f}s • "
            f"rate: {rate:.2f} token/s • memory: {session.memory_peak_mb:.0f} MB"
        ),
        (
            f"max_seq_len: {settings.max_sequence_length} • threads: {settings.threads} • "
            f"gpu: {'on' if settings.use_gpu else 'off'} • "
            f"max_new_tokens: {settings.max_new_tokens}"
        ),
        (
            f"sampling({source}): temp={params.temperature}, top_p={params.top_p}, "
            f"top_k={params.top_k}, repeat_penalty={params.repeat_penalty}"
        ),
    ]
    return "\n".join(lines)
