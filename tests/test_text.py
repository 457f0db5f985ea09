"""Tests para los ajustes de texto del bucle de generación."""

from llrt.engine.text import (
    NO_THINK_DIRECTIVE,
    THINK_DIRECTIVE,
    apply_thinking_directive,
    repair_escapes,
)


class TestThinkingDirective:
    def test_appends_think(self):
        assert apply_thinking_directive("hola", True) == f"hola\n{THINK_DIRECTIVE}"

    def test_appends_no_think(self):
        assert apply_thinking_directive("hola", False) == f"hola\n{NO_THINK_DIRECTIVE}"

    def test_does_not_duplicate_existing_directive(self):
        prompt = f"hola {NO_THINK_DIRECTIVE}"
        assert apply_thinking_directive(prompt, False) == prompt

    def test_think_directive_already_present(self):
        prompt = f"{THINK_DIRECTIVE} explica esto"
        assert apply_thinking_directive(prompt, True) == prompt


class TestRepairEscapes:
    def test_plain_text_untouched(self):
        assert repair_escapes("hello world") == "hello world"

    def test_decodes_unicode_escape(self):
        assert repair_escapes("caf\\u00e9") == "café"

    def test_nested_escape_decoded_in_second_pass(self):
        # "\\u005cu00e9" -> "é" -> "é"
        assert repair_escapes("\\u005cu00e9") == "é"

    def test_pass_limit(self):
        assert repair_escapes("\\u005cu00e9", max_passes=1) == "\\u00e9"
