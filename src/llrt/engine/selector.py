# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Inference engine selection by model directory inspection.

Decision logic:
  1. Inspect the directory and map its artifact format to an EngineKind
  2. Construct the engine registered for that kind

Only GGUF models have a backend today.
"""

from enum import Enum
from pathlib import Path

from llrt.engine.base import InferenceEngine
from llrt.engine.native import NativeLibrary
from llrt.exceptions import MissingDependencyError, UnsupportedModelError
from llrt.models.formats import ModelFormat, detect_format


class EngineKind(Enum):
    LLAMA_CPP = "llama-cpp"
    UNSUPPORTED = "unsupported"


def detect_engine_kind(model_path: Path) -> EngineKind:
    if detect_format(model_path) == ModelFormat.GGUF:
        return EngineKind.LLAMA_CPP
    return EngineKind.UNSUPPORTED


def _get_llama_cpp_engine(native: NativeLibrary | None = None) -> InferenceEngine:
    """Lazy import of LlamaCppEngine."""
    from llrt.engine.llama_cpp import LlamaCppEngine

    try:
        return LlamaCppEngine(native)
    except ImportError as e:
        raise MissingDependencyError(
            "llama-cpp",
            "pip install llama-cpp-python  "
            '(GPU: CMAKE_ARGS="-DGGML_CUDA=on" pip install llama-cpp-python)',
        ) from e


def select_engine(
    model_path: Path,
    backend: str = "auto",
    native: NativeLibrary | None = None,
) -> InferenceEngine:
    """
    Selects and instantiates the appropriate inference engine.

    Args:
        model_path: Model directory (or artifact file)
        backend: "auto" or "llama-cpp"
        native: Native library to hand to the engine (tests inject a fake)
    """
    if backend != "auto":
        return _create_engine(backend, native)

    kind = detect_engine_kind(model_path)
    if kind == EngineKind.LLAMA_CPP:
        return _get_llama_cpp_engine(native)
    raise UnsupportedModelError(str(model_path), detect_format(model_path).value)


def _create_engine(name: str, native: NativeLibrary | None = None) -> InferenceEngine:
    if name == EngineKind.LLAMA_CPP.value:
        return _get_llama_cpp_engine(native)
    raise ValueError(f"Unknown backend: {name}")
