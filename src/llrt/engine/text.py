# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""Text fix-ups applied around generation."""

import re

THINK_DIRECTIVE = "/think"
NO_THINK_DIRECTIVE = "/no_think"

MAX_REPAIR_PASSES = 3

_UNICODE_ESCAPE = re.compile(r"\\u([0-9a-fA-F]{4})")


def apply_thinking_directive(prompt: str, thinking: bool) -> str:
    """Appends the thinking on/off directive unless the prompt already has it."""
    if thinking:
        if THINK_DIRECTIVE not in prompt:
            return f"{prompt}\n{THINK_DIRECTIVE}"
        return prompt
    if NO_THINK_DIRECTIVE not in prompt:
        return f"{prompt}\n{NO_THINK_DIRECTIVE}"
    return prompt


def repair_escapes(text: str, max_passes: int = MAX_REPAIR_PASSES) -> str:
    """Decodes literal ``\\uXXXX`` sequences left in a token."""
    for _ in range(max_passes):
        repaired = _UNICODE_ESCAPE.sub(lambda m: chr(int(m.group(1), 16)), text)
        if repaired == text:
            break
        text = repaired
    return text
