# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""Detection of model artifact formats."""

from enum import Enum
from pathlib import Path

GGUF_MAGIC = b"GGUF"


class ModelFormat(Enum):
    GGUF = "gguf"
    SAFETENSORS = "safetensors"
    PYTORCH = "pytorch"
    UNKNOWN = "unknown"


def detect_format(model_path: Path) -> ModelFormat:
    """Detects the format of a model given its directory or file."""
    if model_path.is_file():
        if model_path.suffix == ".gguf":
            return ModelFormat.GGUF
        elif model_path.suffix == ".safetensors":
            return ModelFormat.SAFETENSORS
        elif model_path.suffix in (".pt", ".pth", ".bin"):
            return ModelFormat.PYTORCH

    if model_path.is_dir():
        extensions = {f.suffix for f in model_path.iterdir() if f.is_file()}

        if ".gguf" in extensions:
            return ModelFormat.GGUF
        elif ".safetensors" in extensions:
            return ModelFormat.SAFETENSORS
        elif ".bin" in extensions or ".pt" in extensions:
            return ModelFormat.PYTORCH

    return ModelFormat.UNKNOWN


def find_gguf(model_path: Path) -> Path | None:
    """The model path itself if it is a file, else the first .gguf in the directory."""
    if model_path.is_file():
        return model_path
    if model_path.is_dir():
        candidates = sorted(model_path.glob("*.gguf"))
        return candidates[0] if candidates else None
    return None


def is_gguf_file(path: Path) -> bool:
    """Checks the GGUF magic; raises OSError if the file cannot be read."""
    with open(path, "rb") as f:
        return f.read(len(GGUF_MAGIC)) == GGUF_MAGIC
