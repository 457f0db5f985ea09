# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Jerarquía de excepciones personalizadas para llrt.

Las categorías siguen el ciclo de vida del motor:
- Configuración/IO: artefactos ausentes o ilegibles, ajustes inválidos
- Nativas: handles inválidos devueltos por la librería de inferencia
- Concurrencia: llamadas duplicadas o conflictos de modelo
- Generación: errores durante el bucle de decodificación
- Timeouts: esperas acotadas que se agotaron durante una recuperación
"""


class LLRTError(Exception):
    """Excepción base para todos los errores de llrt."""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n{self.details}"
        return self.message


# --- Errores de Configuración / IO ---


class ConfigurationError(LLRTError):
    """Error de configuración."""

    pass


class InvalidConfigError(ConfigurationError):
    """Valor de configuración inválido."""

    def __init__(self, key: str, value: str, reason: str | None = None):
        details = f"Valor inválido para '{key}': {value}"
        if reason:
            details += f"\n{reason}"
        super().__init__("Error de configuración", details)
        self.key = key
        self.value = value


class ModelNotFoundError(LLRTError):
    """El modelo solicitado no existe en el directorio de modelos."""

    def __init__(self, model_name: str):
        super().__init__(
            f"Modelo no encontrado: {model_name}",
            "Usa 'llrt list' para ver los modelos disponibles.",
        )
        self.model_name = model_name


class ModelArtifactError(LLRTError):
    """El artefacto del modelo falta o no se puede leer."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Artefacto de modelo inválido: {path}", reason)
        self.path = path


# --- Errores Nativos ---


class EngineError(LLRTError):
    """Error del motor de inferencia."""

    pass


class InitializationError(EngineError):
    """La librería nativa devolvió un handle inválido durante la carga."""

    def __init__(self, step: str, reason: str | None = None):
        super().__init__(f"Fallo de inicialización nativa: {step}", reason)
        self.step = step


class EngineNotInitializedError(EngineError):
    """Se intentó usar el motor sin inicializarlo."""

    def __init__(self):
        super().__init__(
            "Motor no inicializado",
            "Debes cargar un modelo antes de generar texto.",
        )


class MissingDependencyError(EngineError):
    """Dependencia del motor no instalada."""

    def __init__(self, engine_name: str, install_cmd: str):
        super().__init__(
            f"Dependencia faltante para {engine_name}",
            f"Instala con: {install_cmd}",
        )
        self.engine_name = engine_name
        self.install_cmd = install_cmd


class UnsupportedModelError(EngineError):
    """No hay motor capaz de ejecutar el formato del modelo."""

    def __init__(self, model_path: str, fmt: str):
        super().__init__(
            f"Formato de modelo no soportado: {fmt}",
            f"Ruta: {model_path}. Solo se admiten modelos GGUF.",
        )
        self.model_path = model_path
        self.format = fmt


# --- Errores de Concurrencia ---


class ConcurrencyConflictError(LLRTError):
    """Conflicto de concurrencia sobre el modelo."""

    pass


class CallConflictError(ConcurrencyConflictError):
    """Ya hay una llamada en curso."""

    def __init__(self, elapsed: float):
        super().__init__(
            "Ya hay una llamada al modelo en curso",
            f"La llamada anterior empezó hace {elapsed:.1f}s. Espera a que termine.",
        )
        self.elapsed = elapsed


class ModelBusyError(ConcurrencyConflictError):
    """El modelo está cargando o generando."""

    def __init__(self, model_name: str | None, state: str):
        super().__init__(f"Modelo ocupado: {model_name or '-'}", f"Estado actual: {state}")
        self.model_name = model_name
        self.state = state


class InvalidStateError(ConcurrencyConflictError):
    """Operación no permitida en el estado actual."""

    def __init__(self, operation: str, state: str, expected: str):
        super().__init__(
            f"No se puede ejecutar '{operation}' en estado {state}",
            f"Estado requerido: {expected}",
        )
        self.operation = operation
        self.state = state


# --- Errores de Generación ---


class GenerationError(EngineError):
    """Error durante el bucle de generación."""

    pass


# --- Errores de Timeout ---


class LLRTTimeoutError(LLRTError):
    """Una espera acotada se agotó."""

    def __init__(self, message: str, timeout: float, details: str | None = None):
        super().__init__(message, details)
        self.timeout = timeout


class LoadTimeoutError(LLRTTimeoutError):
    """El modelo no terminó de cargar a tiempo."""

    def __init__(self, model_name: str, timeout: float):
        super().__init__(
            f"Timeout esperando la carga de {model_name}",
            timeout,
            f"El modelo no estuvo listo en {timeout:.0f}s.",
        )
        self.model_name = model_name


class StopTimeoutError(LLRTTimeoutError):
    """La generación en curso no se detuvo a tiempo."""

    def __init__(self, timeout: float):
        super().__init__(
            "Timeout esperando a que termine la generación",
            timeout,
        )


class InferenceTimeoutError(LLRTTimeoutError):
    """La inferencia superó el presupuesto total configurado."""

    def __init__(self, timeout: float):
        super().__init__(
            "La inferencia superó el tiempo máximo",
            timeout,
            f"Presupuesto configurado: {timeout:.0f}s.",
        )


class TerminationFailedError(EngineError):
    """No se pudo terminar un hilo de generación bloqueado."""

    def __init__(self, attempts: int):
        super().__init__(
            f"No se pudo detener la generación tras {attempts} intentos",
            "Reinicia el motor para recuperar el modelo.",
        )
        self.attempts = attempts
