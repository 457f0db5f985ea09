# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""Tests para el runtime (punto de composición)."""

from dataclasses import replace

from llrt.config import load_settings
from llrt.lifecycle.manager import ModelState
from llrt.runtime import Runtime


class TestRuntime:
    def test_loads_settings_from_disk(self, temp_config, fast_settings, fake_native):
        from llrt.config import save_settings

        save_settings(temp_config.settings_path, replace(fast_settings, threads=3))

        runtime = Runtime(temp_config, native=fake_native)
        try:
            assert runtime.settings.threads == 3
            assert runtime.manager.state == ModelState.UNLOADED
        finally:
            runtime.shutdown()

    def test_update_settings_persists(self, runtime, temp_config):
        updated = replace(runtime.settings, max_new_tokens=32)

        runtime.update_settings(updated)

        assert runtime.settings.max_new_tokens == 32
        assert load_settings(temp_config.settings_path).max_new_tokens == 32

    def test_update_settings_without_persist(self, runtime, temp_config):
        runtime.update_settings(replace(runtime.settings, threads=1), persist=False)

        assert runtime.settings.threads == 1
        assert not temp_config.settings_path.exists()

    def test_new_settings_apply_to_next_call(self, runtime, make_model, recorder):
        make_model("m1")
        runtime.update_settings(replace(runtime.settings, max_new_tokens=1), persist=False)
        callback = recorder()

        runtime.caller.call_model("m1", "hi", callback)

        assert callback.wait(5)
        assert callback.tokens[0] == "Hello"
        assert "tokens: 1" in callback.tokens[1]
