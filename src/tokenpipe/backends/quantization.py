# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Quantization policies.

A policy is applied exactly once, while a backend loads a model, and the
handle is published only after it succeeded. Supported schemes:

  None          -> weights are loaded as stored (no-op)
  "4bit"/"8bit" -> dynamic quantization (bitsandbytes on transformers, mlx.nn.quantize on mlx)
  GGUF types    -> "Q4_K_M", "Q8_0", ... select the llama.cpp file with that precision
"""

from dataclasses import dataclass
from pathlib import Path

from tokenpipe.exceptions import InvalidConfigError

GGUF_TYPES = [
    "Q2_K", "Q3_K_S", "Q3_K_M", "Q3_K_L",
    "Q4_0", "Q4_1", "Q4_K_S", "Q4_K_M",
    "Q5_0", "Q5_1", "Q5_K_S", "Q5_K_M",
    "Q6_K", "Q8_0", "F16", "F32",
    "IQ1_S", "IQ1_M", "IQ2_XXS", "IQ2_XS", "IQ2_S", "IQ2_M",
    "IQ3_XXS", "IQ3_XS", "IQ3_S", "IQ3_M",
    "IQ4_NL", "IQ4_XS",
]

_ALIASES = {
    "4bit": "4bit",
    "int4": "4bit",
    "nf4": "4bit",
    "8bit": "8bit",
    "int8": "8bit",
}

# Approximate size of the loaded weights relative to 16-bit files on disk.
_SIZE_FACTORS = {"4bit": 0.3, "8bit": 0.55}


@dataclass(frozen=True)
class QuantizationPolicy:
    scheme: str | None = None
    # Modules kept at full precision (matched as substrings of the module path)
    skip_modules: tuple[str, ...] = ("lm_head",)
    group_size: int = 64

    @classmethod
    def parse(cls, value: "str | QuantizationPolicy | None") -> "QuantizationPolicy":
        """Builds a policy from a user-supplied scheme id."""
        if isinstance(value, cls):
            return value
        if value is None or not str(value).strip() or str(value).strip().lower() == "none":
            return cls()
        raw = str(value).strip()
        if raw.lower() in _ALIASES:
            return cls(scheme=_ALIASES[raw.lower()])
        if raw.upper() in GGUF_TYPES:
            return cls(scheme=raw.upper())
        raise InvalidConfigError("quantization", raw, ["none", "4bit", "8bit", *GGUF_TYPES])

    @property
    def is_noop(self) -> bool:
        return self.scheme is None

    @property
    def bits(self) -> int | None:
        if self.scheme == "4bit":
            return 4
        if self.scheme == "8bit":
            return 8
        return None

    @property
    def cache_id(self) -> str:
        return self.scheme or "none"

    @property
    def size_factor(self) -> float:
        return _SIZE_FACTORS.get(self.scheme, 1.0)

    def should_quantize(self, module_path: str) -> bool:
        """Per-layer selection: False for modules listed in skip_modules."""
        return not any(skip in module_path for skip in self.skip_modules)


NO_QUANTIZATION = QuantizationPolicy()


def detect_gguf_type(filename: str) -> str | None:
    """Detects the quantization type from a GGUF file name."""
    upper = Path(filename).name.upper()
    # Longest first so "Q4_K_M" wins over "Q4_K" style prefixes
    for q in sorted(GGUF_TYPES, key=len, reverse=True):
        if q in upper:
            return q
    return None


def select_gguf_file(files: list[Path], scheme: str | None) -> Path | None:
    """Selects the GGUF file matching the scheme.

    Without a scheme the default priority applies: Q4_K_M > Q5_K_M > Q4_K_S > first file.
    Returns None when a scheme was requested and no file carries it.
    """
    if not files:
        return None
    files = sorted(files)
    if scheme:
        for f in files:
            if detect_gguf_type(f.name) == scheme.upper():
                return f
        return None

    priority = ["Q4_K_M", "Q5_K_M", "Q4_K_S", "Q5_K_S", "Q6_K", "Q8_0"]
    for q in priority:
        for f in files:
            if detect_gguf_type(f.name) == q:
                return f
    return files[0]
