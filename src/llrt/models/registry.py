# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Local model inventory.
Each model is a directory under ~/.llrt/models holding its artifact and,
optionally, a sidecar parameter file.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from llrt.exceptions import ModelNotFoundError
from llrt.models.formats import ModelFormat, detect_format


@dataclass
class ModelEntry:
    name: str
    path: Path
    format: ModelFormat
    size_bytes: int
    modified_at: str


class ModelRegistry:
    """Lists the models available in the models directory."""

    def __init__(self, models_dir: Path):
        self.models_dir = models_dir

    def _entry(self, path: Path) -> ModelEntry:
        size = sum(f.stat().st_size for f in path.iterdir() if f.is_file())
        modified = datetime.fromtimestamp(path.stat().st_mtime).isoformat(timespec="seconds")
        return ModelEntry(
            name=path.name,
            path=path,
            format=detect_format(path),
            size_bytes=size,
            modified_at=modified,
        )

    def names(self) -> list[str]:
        if not self.models_dir.is_dir():
            return []
        return sorted(p.name for p in self.models_dir.iterdir() if p.is_dir())

    def list_all(self) -> list[ModelEntry]:
        """Lists all model directories, sorted by name."""
        return [self._entry(self.models_dir / name) for name in self.names()]

    def path_for(self, name: str) -> Path:
        """Directory of a model; it may not exist yet."""
        return self.models_dir / name

    def get(self, name: str) -> ModelEntry:
        path = self.path_for(name)
        if not path.is_dir():
            raise ModelNotFoundError(name)
        return self._entry(path)

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_dir()
