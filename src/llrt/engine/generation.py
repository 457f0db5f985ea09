# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Token generation loop.

Drives single-step native decode calls against a context and streams the
text increments to a callback. The loop only returns normally after
delivering exactly one terminal event, except when it hands the call over
to forced termination (``on_unhealthy``), which then owns the terminal event.
"""

import logging
from typing import Callable

from llrt.config import RuntimeSettings
from llrt.engine.base import InferenceParams, StreamCallback
from llrt.engine.health import ThreadHealthMonitor
from llrt.engine.native import INVALID_HANDLE, DecodePosition, NativeLibrary, StepStatus
from llrt.engine.params import ParameterResolver, SamplingParams
from llrt.engine.pool import ResourcePool, batch_size_for_prompt
from llrt.engine.stats import GenerationSession, format_report
from llrt.engine.text import apply_thinking_directive, repair_escapes

logger = logging.getLogger(__name__)

STOPPED_MESSAGE = "Generation stopped"


def _pool_sampling(params: SamplingParams) -> SamplingParams | None:
    """Greedy sampling without penalties is what the pooled sampler does."""
    if params.temperature <= 0 and params.repeat_penalty == 1.0:
        return None
    return params


class GenerationLoop:
    def __init__(
        self,
        native: NativeLibrary,
        pool: ResourcePool,
        resolver: ParameterResolver,
        settings: RuntimeSettings,
        health: ThreadHealthMonitor,
    ):
        self.native = native
        self.pool = pool
        self.resolver = resolver
        self.settings = settings
        self.health = health

    def run(
        self,
        context: int,
        prompt: str,
        params: InferenceParams,
        callback: StreamCallback,
        session: GenerationSession,
        on_unhealthy: Callable[[str], None],
    ) -> None:
        if params.max_tokens <= 0:
            callback.on_complete("")
            return

        prompt = apply_thinking_directive(prompt, params.thinking_mode)
        sampling, source = self.resolver.resolve(seed=params.seed)

        batch = self.pool.acquire_batch(
            batch_size_for_prompt(len(prompt), self.settings.max_sequence_length)
        )
        sampler = self.pool.acquire_sampler(_pool_sampling(sampling))
        try:
            if batch == INVALID_HANDLE or sampler == INVALID_HANDLE:
                callback.on_error("Could not allocate native batch or sampler")
                return
            if context == INVALID_HANDLE or not self.native.kv_cache_clear(context):
                callback.on_error("Native context is not available")
                return

            n_prompt = self.native.prime(context, batch, prompt, params.max_tokens)
            if n_prompt < 0:
                callback.on_error("Prompt initialization failed")
                return
            logger.debug("Prompt primed with %d tokens", n_prompt)

            self._decode(context, batch, sampler, params, callback, session, on_unhealthy,
                         DecodePosition(current=n_prompt, start=n_prompt), sampling, source)
        except Exception as e:
            logger.exception("Generation failed")
            callback.on_error(f"Generation failed: {e}")
        finally:
            if batch != INVALID_HANDLE:
                self.pool.release_batch(batch)
            if sampler != INVALID_HANDLE:
                self.pool.release_sampler(sampler)

    def _decode(
        self,
        context: int,
        batch: int,
        sampler: int,
        params: InferenceParams,
        callback: StreamCallback,
        session: GenerationSession,
        on_unhealthy: Callable[[str], None],
        position: DecodePosition,
        sampling: SamplingParams,
        source: str,
    ) -> None:
        parts: list[str] = []
        session.sample_memory()

        while session.tokens < params.max_tokens:
            if session.stop_requested or self.native.get_should_stop():
                # An abandoned session must not touch the flag of its successor
                if not session.abandoned:
                    self.native.set_should_stop(True)
                logger.info("Generation %d stopped after %d tokens", session.generation_id, session.tokens)
                callback.on_error(STOPPED_MESSAGE)
                return

            self.health.heartbeat()
            if not self.health.check(generating=True):
                session.request_stop("unhealthy")
                self.native.set_should_stop(True)
                on_unhealthy("generation thread unhealthy")
                return

            step = self.native.decode_step(context, batch, sampler, params.max_tokens, position)

            if step.status is StepStatus.PENDING:
                session.fragments += 1
                continue
            if step.status is StepStatus.END:
                break
            if step.status is StepStatus.STOPPED:
                logger.info("Native layer stopped generation %d", session.generation_id)
                callback.on_error(STOPPED_MESSAGE)
                return
            if step.status is StepStatus.TRUNCATED:
                parts.append(step.text)
                callback.on_token(step.text)
                continue

            text = repair_escapes(step.text)
            parts.append(text)
            session.record_token()
            callback.on_token(text)

        session.sample_memory()
        report = format_report(session, self.settings, sampling, source)
        callback.on_token(report)
        callback.on_complete("".join(parts) + report)
