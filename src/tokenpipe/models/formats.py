# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""Detection of model weight formats."""

from enum import Enum
from pathlib import Path

GGUF_MAGIC = b"GGUF"


class ModelFormat(Enum):
    GGUF = "gguf"
    SAFETENSORS = "safetensors"
    PYTORCH = "pytorch"
    UNKNOWN = "unknown"


_SUFFIX_FORMATS = {
    ".gguf": ModelFormat.GGUF,
    ".safetensors": ModelFormat.SAFETENSORS,
    ".bin": ModelFormat.PYTORCH,
    ".pt": ModelFormat.PYTORCH,
    ".pth": ModelFormat.PYTORCH,
}

# A directory holding several formats is loaded as the first one found here
_DIRECTORY_PRIORITY = (ModelFormat.GGUF, ModelFormat.SAFETENSORS, ModelFormat.PYTORCH)


def _has_gguf_magic(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            return f.read(len(GGUF_MAGIC)) == GGUF_MAGIC
    except OSError:
        return False


def detect_format(model_path: Path) -> ModelFormat:
    """
    Detects the format of a model given its directory or file.

    Files are recognized by suffix; a file without a known suffix is
    recognized as GGUF by its magic bytes (content-addressed blobs have no
    suffix).
    """
    if model_path.is_file():
        fmt = _SUFFIX_FORMATS.get(model_path.suffix.lower())
        if fmt is not None:
            return fmt
        return ModelFormat.GGUF if _has_gguf_magic(model_path) else ModelFormat.UNKNOWN

    if model_path.is_dir():
        found = {_SUFFIX_FORMATS.get(f.suffix.lower()) for f in model_path.rglob("*") if f.is_file()}
        for fmt in _DIRECTORY_PRIORITY:
            if fmt in found:
                return fmt

    return ModelFormat.UNKNOWN


def weight_files(model_path: Path) -> list[Path]:
    """Lists the weight files of a model (a single file or a directory)."""
    if model_path.is_file():
        return [model_path]
    if model_path.is_dir():
        return sorted(f for f in model_path.rglob("*") if f.is_file() and f.suffix.lower() in _SUFFIX_FORMATS)
    return []
