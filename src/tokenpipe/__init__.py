# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""tokenpipe: backend-agnostic LLM inference pipeline."""

__version__ = "0.1.0"
