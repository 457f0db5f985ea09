# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""llrt: runtime local para modelos LLM cuantizados."""

__version__ = "0.1.0"
