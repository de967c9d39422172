# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""Registry entry for a local model."""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime


def format_bytes(n: int) -> str:
    """Human-readable size: GB from one gigabyte up, MB below."""
    if n >= 1024**3:
        return f"{n / 1024**3:.1f} GB"
    return f"{n / 1024**2:.0f} MB"


@dataclass
class ModelManifest:
    """What the registry knows about one model on disk."""

    name: str
    local_path: str  # weight file or model directory
    format: str  # a ModelFormat value

    alias: str | None = None
    size_bytes: int = 0

    # GGUF type read from the file name; None for safetensors/pytorch models
    quantization: str | None = None
    architecture: str | None = None
    context_length: int = 4096

    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    last_used: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ModelManifest":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @property
    def display_size(self) -> str:
        return format_bytes(self.size_bytes)
