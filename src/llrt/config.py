# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""Configuración central de llrt."""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import get_args

from llrt.exceptions import InvalidConfigError

logger = logging.getLogger(__name__)


@dataclass
class LLRTConfig:
    """Configuración global de la aplicación."""

    # Directorio raíz (~/.llrt por defecto)
    home_dir: Path = field(
        default_factory=lambda: Path(
            os.environ.get("LLRT_HOME", Path.home() / ".llrt")
        )
    )

    # Subdirectorios
    @property
    def models_dir(self) -> Path:
        return self.home_dir / "models"

    @property
    def settings_path(self) -> Path:
        return self.home_dir / "settings.json"

    # Servidor
    host: str = "127.0.0.1"
    port: int = 11435

    def ensure_dirs(self):
        """Crea los directorios necesarios."""
        self.models_dir.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class RuntimeSettings:
    """Ajustes de inferencia persistidos en settings.json."""

    # Modelo / contexto
    max_sequence_length: int = 4096
    threads: int = 4
    max_new_tokens: int = 512
    use_gpu: bool = False
    no_thinking: bool = False

    # Parámetros de muestreo manuales
    manual_temperature: float = 0.8
    manual_top_p: float = 0.95
    manual_top_k: int = 40
    manual_repeat_penalty: float = 1.1
    priority_manual_params: bool = False

    # Esperas del gestor de ciclo de vida (segundos)
    load_wait_timeout: float = 30.0
    stop_wait_timeout: float = 5.0
    poll_interval: float = 0.1
    stale_call_timeout: float = 60.0
    unload_settle_delay: float = 0.1

    # Salud del hilo de generación (None = sin límite)
    health_check_interval: float = 5.0
    stall_timeout: float | None = None
    max_runtime: float | None = None
    inference_timeout: float | None = None

    # Terminación forzada
    max_termination_retries: int = 3
    termination_cancel_wait: float = 1.0
    termination_poll_interval: float = 0.5
    termination_poll_attempts: int = 10
    stop_grace_period: float = 2.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RuntimeSettings":
        """Construye los ajustes ignorando claves desconocidas."""
        known = {f.name: f for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                logger.debug("Ignoring unknown setting %s", key)
                continue
            values[key] = _coerce(key, value, known[key].type)
        return cls(**values)

    def with_value(self, key: str, raw: str) -> "RuntimeSettings":
        """Devuelve una copia con ``key`` actualizado desde texto."""
        known = {f.name: f for f in fields(self)}
        if key not in known:
            raise InvalidConfigError(key, raw, "Clave desconocida.")
        return replace(self, **{key: _coerce(key, raw, known[key].type)})


def _coerce(key: str, value, field_type):
    """Convierte un valor al tipo declarado del campo."""
    args = [a for a in get_args(field_type) if a is not type(None)]
    optional = bool(args)
    base = args[0] if optional else field_type
    if optional and (value is None or (isinstance(value, str) and value.lower() in ("none", "null", ""))):
        return None
    try:
        if base is bool:
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in ("1", "true", "yes", "on"):
                    return True
                if lowered in ("0", "false", "no", "off"):
                    return False
                raise ValueError(value)
            return bool(value)
        if base is int:
            if isinstance(value, bool):
                raise ValueError(value)
            return int(value)
        return float(value)
    except (TypeError, ValueError) as e:
        raise InvalidConfigError(key, str(value), f"Se esperaba {base.__name__}.") from e


def load_settings(path: Path) -> RuntimeSettings:
    """Lee los ajustes; usa valores por defecto si el fichero no existe."""
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        return RuntimeSettings()
    except json.JSONDecodeError as e:
        raise InvalidConfigError(str(path), "JSON", f"Fichero de ajustes corrupto: {e}") from e
    if not isinstance(data, dict):
        raise InvalidConfigError(str(path), type(data).__name__, "Se esperaba un objeto JSON.")
    return RuntimeSettings.from_dict(data)


def save_settings(path: Path, settings: RuntimeSettings):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings.to_dict(), indent=2))


# Instancia global
config = LLRTConfig()
