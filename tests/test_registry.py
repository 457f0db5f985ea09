"""Tests para el inventario de modelos y la detección de formato."""

import pytest

from llrt.exceptions import ModelNotFoundError
from llrt.models.formats import ModelFormat, detect_format, find_gguf, is_gguf_file
from llrt.models.registry import ModelRegistry


class TestFormats:
    def test_detect_gguf_dir(self, temp_dir):
        (temp_dir / "model.gguf").write_bytes(b"GGUF")
        assert detect_format(temp_dir) == ModelFormat.GGUF

    def test_detect_safetensors_file(self, temp_dir):
        path = temp_dir / "model.safetensors"
        path.write_bytes(b"x")
        assert detect_format(path) == ModelFormat.SAFETENSORS

    def test_detect_unknown(self, temp_dir):
        assert detect_format(temp_dir) == ModelFormat.UNKNOWN

    def test_find_gguf_first_sorted(self, temp_dir):
        (temp_dir / "b.gguf").write_bytes(b"GGUF")
        (temp_dir / "a.gguf").write_bytes(b"GGUF")
        assert find_gguf(temp_dir) == temp_dir / "a.gguf"

    def test_find_gguf_none(self, temp_dir):
        assert find_gguf(temp_dir) is None
        assert find_gguf(temp_dir / "missing") is None

    def test_magic(self, temp_dir):
        good = temp_dir / "good.gguf"
        good.write_bytes(b"GGUF\x03\x00")
        bad = temp_dir / "bad.gguf"
        bad.write_bytes(b"PK\x03\x04")
        assert is_gguf_file(good)
        assert not is_gguf_file(bad)

    def test_magic_unreadable(self, temp_dir):
        with pytest.raises(OSError):
            is_gguf_file(temp_dir / "missing.gguf")


class TestModelRegistry:
    def test_empty(self, temp_dir):
        registry = ModelRegistry(temp_dir / "models")
        assert registry.names() == []
        assert registry.list_all() == []

    def test_list_all(self, temp_config, make_model):
        make_model("beta")
        make_model("alpha")
        registry = ModelRegistry(temp_config.models_dir)

        entries = registry.list_all()

        assert [e.name for e in entries] == ["alpha", "beta"]
        assert entries[0].format == ModelFormat.GGUF
        assert entries[0].size_bytes == 36

    def test_get_and_exists(self, temp_config, make_model):
        make_model("m1")
        registry = ModelRegistry(temp_config.models_dir)

        assert registry.exists("m1")
        assert registry.get("m1").path == temp_config.models_dir / "m1"
        assert not registry.exists("m2")

    def test_get_missing(self, temp_config):
        with pytest.raises(ModelNotFoundError):
            ModelRegistry(temp_config.models_dir).get("missing")
