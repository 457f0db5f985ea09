# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Sampling parameter resolution.

A model directory may ship its own recommended sampling parameters in a
sidecar file. Two sources are read, in order:

  params                  JSON object, or ``key=value`` lines with ``#`` comments
  generation_config.json  Hugging Face style generation config

Whether those win over the manually configured values is decided by the
``priority_manual_params`` setting.
"""

import json
import logging
import threading
from dataclasses import dataclass, replace
from pathlib import Path

from llrt.config import RuntimeSettings

logger = logging.getLogger(__name__)

SIDECAR_FILES = ("params", "generation_config.json")

_KEY_ALIASES = {
    "temperature": "temperature",
    "temp": "temperature",
    "top_p": "top_p",
    "topp": "top_p",
    "top_k": "top_k",
    "topk": "top_k",
    "repeat_penalty": "repeat_penalty",
    "repetition_penalty": "repeat_penalty",
}

SOURCE_MANUAL = "manual"
SOURCE_MODEL = "model"


@dataclass(frozen=True)
class SamplingParams:
    temperature: float = 0.8
    top_p: float = 0.95
    top_k: int = 40
    repeat_penalty: float = 1.1
    seed: int = -1

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "SamplingParams":
        return cls(
            temperature=settings.manual_temperature,
            top_p=settings.manual_top_p,
            top_k=settings.manual_top_k,
            repeat_penalty=settings.manual_repeat_penalty,
        )


def _parse_value(key: str, raw) -> float | int:
    if key == "top_k":
        return int(float(raw))
    return float(raw)


def parse_sidecar_text(text: str) -> dict[str, float | int]:
    """Parses sidecar content; unknown keys and malformed values are skipped."""
    text = text.strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning("Malformed JSON sidecar: %s", e)
            return {}
        items = data.items() if isinstance(data, dict) else []
    else:
        items = []
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            items.append((key, value.split("#", 1)[0].strip()))

    values: dict[str, float | int] = {}
    for key, raw in items:
        name = _KEY_ALIASES.get(str(key).strip().lower())
        if name is None:
            continue
        try:
            values[name] = _parse_value(name, raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed sidecar value %s=%r", key, raw)
    return values


def read_sidecar_params(model_dir: Path) -> dict[str, float | int] | None:
    """Reads the first sidecar that yields at least one recognized key."""
    for name in SIDECAR_FILES:
        path = model_dir / name
        if not path.is_file():
            continue
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Cannot read sidecar %s: %s", path, e)
            continue
        values = parse_sidecar_text(text)
        if values:
            logger.debug("Loaded %d sampling keys from %s", len(values), path)
            return values
    return None


class ParameterResolver:
    """Resolves the sampling parameters for each call and remembers them."""

    def __init__(self, model_dir: Path | None, settings: RuntimeSettings):
        self.model_dir = model_dir
        self.settings = settings
        self._lock = threading.Lock()
        self._actual: SamplingParams | None = None
        self._source: str | None = None

    def resolve(self, seed: int = -1) -> tuple[SamplingParams, str]:
        manual = replace(SamplingParams.from_settings(self.settings), seed=seed)
        params, source = manual, SOURCE_MANUAL

        if not self.settings.priority_manual_params and self.model_dir is not None:
            sidecar = read_sidecar_params(self.model_dir)
            if sidecar:
                params, source = replace(manual, **sidecar), SOURCE_MODEL

        with self._lock:
            self._actual = params
            self._source = source
        logger.debug("Sampling parameters resolved from %s source", source)
        return params, source

    @property
    def actual_params(self) -> SamplingParams | None:
        with self._lock:
            return self._actual

    @property
    def actual_source(self) -> str | None:
        with self._lock:
            return self._source
