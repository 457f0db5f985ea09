"""Tests para la jerarquía de excepciones."""

import pytest

from llrt.exceptions import (
    CallConflictError,
    ConcurrencyConflictError,
    ConfigurationError,
    EngineError,
    InitializationError,
    InvalidConfigError,
    LLRTError,
    LLRTTimeoutError,
    LoadTimeoutError,
    MissingDependencyError,
    ModelBusyError,
    ModelNotFoundError,
    TerminationFailedError,
)


class TestLLRTError:
    def test_message_only(self):
        assert str(LLRTError("fallo")) == "fallo"

    def test_message_with_details(self):
        error = LLRTError("fallo", "más información")
        assert str(error) == "fallo\nmás información"
        assert error.details == "más información"


class TestHierarchy:
    """Cada error pertenece a su categoría."""

    @pytest.mark.parametrize(
        "error, category",
        [
            (InvalidConfigError("threads", "x"), ConfigurationError),
            (InitializationError("load_model"), EngineError),
            (MissingDependencyError("llama-cpp", "pip install llama-cpp-python"), EngineError),
            (TerminationFailedError(3), EngineError),
            (CallConflictError(1.5), ConcurrencyConflictError),
            (ModelBusyError("m1", "generating"), ConcurrencyConflictError),
            (LoadTimeoutError("m1", 30), LLRTTimeoutError),
        ],
    )
    def test_category(self, error, category):
        assert isinstance(error, category)
        assert isinstance(error, LLRTError)

    def test_model_not_found(self):
        error = ModelNotFoundError("qwen")
        assert error.model_name == "qwen"
        assert "qwen" in str(error)

    def test_call_conflict_elapsed(self):
        error = CallConflictError(2.25)
        assert error.elapsed == 2.25
        assert "2.2s" in str(error) or "2.3s" in str(error)

    def test_load_timeout(self):
        error = LoadTimeoutError("m1", 30)
        assert error.timeout == 30
        assert error.model_name == "m1"

    def test_invalid_config_reason(self):
        error = InvalidConfigError("threads", "muchos", "Se esperaba int.")
        assert error.key == "threads"
        assert "Se esperaba int." in str(error)
