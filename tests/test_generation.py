# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""Tests for the token generation loop."""

from unittest.mock import MagicMock

import pytest

from llrt.config import RuntimeSettings
from llrt.engine.base import InferenceParams
from llrt.engine.generation import STOPPED_MESSAGE, GenerationLoop
from llrt.engine.health import ThreadHealthMonitor
from llrt.engine.native import INVALID_HANDLE, TRUNCATION_NOTICE
from llrt.engine.params import ParameterResolver, SamplingParams
from llrt.engine.pool import ResourcePool
from llrt.engine.stats import GenerationSession
from llrt.exceptions import GenerationError


@pytest.fixture
def settings():
    return RuntimeSettings(max_sequence_length=1024, threads=2)


@pytest.fixture
def pool(fake_native, settings):
    p = ResourcePool(fake_native)
    p.preallocate(settings.max_sequence_length)
    return p


@pytest.fixture
def context(fake_native):
    return fake_native.create_context(1, 1024, 2, 0)


def make_loop(native, pool, settings, health=None):
    return GenerationLoop(
        native,
        pool,
        ParameterResolver(None, settings),
        settings,
        health or ThreadHealthMonitor(),
    )


def run(loop, context, callback, session=None, on_unhealthy=None, **params):
    loop.run(
        context,
        "Say hello",
        InferenceParams(**params),
        callback,
        session or GenerationSession(1),
        on_unhealthy or (lambda reason: None),
    )


class TestGenerationLoop:
    """Streaming de tokens y evento final."""

    def test_tokens_reassemble_into_full_text(self, fake_native, pool, settings, context, recorder):
        callback = recorder()
        run(make_loop(fake_native, pool, settings), context, callback)

        report = callback.tokens[-1]
        assert callback.tokens[:-1] == ["Hello", ",", " world"]
        assert report.startswith("\n\n---\n")
        assert callback.completed == ["Hello, world" + report]
        assert callback.errors == []

    def test_report_mentions_token_count(self, fake_native, pool, settings, context, recorder):
        callback = recorder()
        run(make_loop(fake_native, pool, settings), context, callback)
        assert "tokens: 3" in callback.tokens[-1]
        assert "sampling(manual)" in callback.tokens[-1]

    def test_zero_max_tokens(self, fake_native, pool, settings, context, recorder):
        callback = recorder()
        run(make_loop(fake_native, pool, settings), context, callback, max_tokens=0)

        assert callback.completed == [""]
        assert callback.tokens == []
        assert fake_native.primed == []

    def test_thinking_directive_added(self, fake_native, pool, settings, context, recorder):
        run(make_loop(fake_native, pool, settings), context, recorder(), thinking_mode=False)
        assert fake_native.primed[-1].endswith("\n/no_think")

    def test_pending_fragments_not_emitted(self, fake_native, pool, settings, context, recorder):
        fake_native.tokens = ["caf", None, "é"]
        callback = recorder()
        session = GenerationSession(1)

        run(make_loop(fake_native, pool, settings), context, callback, session=session)

        assert callback.tokens[:-1] == ["caf", "é"]
        assert session.fragments == 1
        assert session.tokens == 2

    def test_truncation_notice(self, fake_native, pool, settings, context, recorder):
        fake_native.tokens = [None, "a", "b", "c", "d"]
        callback = recorder()

        run(make_loop(fake_native, pool, settings), context, callback, max_tokens=3)

        assert callback.tokens[:-1] == ["a", "b", TRUNCATION_NOTICE]
        assert callback.completed[0].startswith("ab" + TRUNCATION_NOTICE)

    def test_escaped_unicode_repaired(self, fake_native, pool, settings, context, recorder):
        fake_native.tokens = ["caf\\u00e9"]
        callback = recorder()
        run(make_loop(fake_native, pool, settings), context, callback)
        assert callback.tokens[0] == "café"

    def test_stop_requested(self, fake_native, pool, settings, context, recorder):
        callback = recorder()
        session = GenerationSession(1)
        session.request_stop("user")

        run(make_loop(fake_native, pool, settings), context, callback, session=session)

        assert callback.errors == [STOPPED_MESSAGE]
        assert callback.completed == []

    def test_native_stop_flag(self, fake_native, pool, settings, context, recorder):
        fake_native.set_should_stop(True)
        callback = recorder()

        run(make_loop(fake_native, pool, settings), context, callback)

        assert callback.errors == [STOPPED_MESSAGE]

    def test_prime_failure(self, fake_native, pool, settings, context, recorder):
        fake_native.prime_result = -1
        callback = recorder()

        run(make_loop(fake_native, pool, settings), context, callback)

        assert callback.errors == ["Prompt initialization failed"]

    def test_invalid_context(self, fake_native, pool, settings, recorder):
        callback = recorder()
        run(make_loop(fake_native, pool, settings), INVALID_HANDLE, callback)
        assert callback.errors == ["Native context is not available"]

    def test_allocation_failure(self, fake_native, settings, context, recorder):
        fake_native.fail_batch = True
        callback = recorder()

        run(make_loop(fake_native, ResourcePool(fake_native), settings), context, callback)

        assert callback.errors == ["Could not allocate native batch or sampler"]

    def test_decode_error(self, fake_native, pool, settings, context, recorder):
        fake_native.decode_error = GenerationError("llama_decode failed")
        callback = recorder()

        run(make_loop(fake_native, pool, settings), context, callback)

        assert len(callback.errors) == 1
        assert callback.errors[0].startswith("Generation failed: llama_decode failed")

    def test_handles_released_after_error(self, fake_native, pool, settings, context, recorder):
        fake_native.decode_error = GenerationError("boom")
        run(make_loop(fake_native, pool, settings), context, recorder())

        assert not pool.batch.in_use
        assert fake_native.freed_samplers  # custom sampler freed

    def test_unhealthy_hands_over_without_terminal_event(
        self, fake_native, pool, settings, context, recorder
    ):
        health = MagicMock()
        health.check.return_value = False
        reasons = []
        callback = recorder()
        session = GenerationSession(1)

        run(
            make_loop(fake_native, pool, settings, health),
            context,
            callback,
            session=session,
            on_unhealthy=reasons.append,
        )

        assert reasons == ["generation thread unhealthy"]
        assert callback.terminal_events == 0
        assert session.stop_requested
        assert fake_native.get_should_stop()


class TestSamplerSelection:
    def test_greedy_uses_pooled_sampler(self, fake_native, context, recorder):
        settings = RuntimeSettings(manual_temperature=0.0, manual_repeat_penalty=1.0)
        pool = ResourcePool(fake_native)
        pool.preallocate(512)

        run(make_loop(fake_native, pool, settings), context, recorder())

        assert fake_native.sampler_params == [None]
        assert not pool.sampler.in_use

    def test_custom_sampling_gets_dedicated_sampler(self, fake_native, pool, settings, context, recorder):
        run(make_loop(fake_native, pool, settings), context, recorder(), seed=7)

        custom = fake_native.sampler_params[-1]
        assert isinstance(custom, SamplingParams)
        assert custom.temperature == settings.manual_temperature
        assert custom.seed == 7
        assert len(fake_native.freed_samplers) == 1

    def test_sidecar_params_used(self, fake_native, pool, settings, context, recorder, temp_dir):
        (temp_dir / "params").write_text("temperature=0.3")
        loop = GenerationLoop(
            fake_native, pool, ParameterResolver(temp_dir, settings), settings, ThreadHealthMonitor()
        )
        callback = recorder()

        run(loop, context, callback)

        assert fake_native.sampler_params[-1].temperature == 0.3
        assert "sampling(model)" in callback.tokens[-1]


class TestStopPropagation:
    def test_stop_propagates_to_native(self, fake_native, pool, settings, context, recorder):
        session = GenerationSession(1)
        session.request_stop("user")

        run(make_loop(fake_native, pool, settings), context, recorder(), session=session)

        assert fake_native.get_should_stop()

    def test_abandoned_session_leaves_native_flag(self, fake_native, pool, settings, context, recorder):
        session = GenerationSession(1)
        session.abandon()
        callback = recorder()

        run(make_loop(fake_native, pool, settings), context, callback, session=session)

        assert callback.errors == [STOPPED_MESSAGE]
        assert not fake_native.get_should_stop()
