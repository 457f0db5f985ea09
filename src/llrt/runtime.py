# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Composition root.

A ``Runtime`` owns the one model manager of the process together with the
settings, registry and caller built around it. The CLI and the API server
create a single instance at startup and pass it along; tests build their
own with a fake native library.
"""

import functools
import logging

from llrt.config import LLRTConfig, RuntimeSettings, load_settings, save_settings
from llrt.engine.native import NativeLibrary
from llrt.engine.selector import select_engine
from llrt.lifecycle.caller import ModelCaller
from llrt.lifecycle.manager import ModelManager
from llrt.models.registry import ModelRegistry

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(
        self,
        config: LLRTConfig,
        settings: RuntimeSettings | None = None,
        native: NativeLibrary | None = None,
    ):
        self.config = config
        self.settings = settings if settings is not None else load_settings(config.settings_path)
        self.registry = ModelRegistry(config.models_dir)
        self.manager = ModelManager(
            self.registry,
            lambda: self.settings,
            engine_factory=functools.partial(select_engine, native=native),
        )
        self.caller = ModelCaller(self.manager, lambda: self.settings)

    def update_settings(self, settings: RuntimeSettings, persist: bool = True) -> None:
        """New settings apply to the next load; the loaded engine keeps its own."""
        self.settings = settings
        if persist:
            save_settings(self.config.settings_path, settings)
        logger.info("Settings updated")

    def shutdown(self) -> None:
        self.caller.shutdown()
        logger.info("Runtime shut down")
