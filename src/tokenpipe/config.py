# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""Central tokenpipe configuration."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from tokenpipe.exceptions import InvalidConfigError

DEVICE_CHOICES = ["auto", "cpu", "gpu"]


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise InvalidConfigError(name, raw) from None


def _env_float(name: str) -> float | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        raise InvalidConfigError(name, raw) from None


def _env_device() -> str:
    value = os.environ.get("TOKENPIPE_DEVICE", "auto").strip().lower() or "auto"
    if value not in DEVICE_CHOICES:
        raise InvalidConfigError("TOKENPIPE_DEVICE", value, DEVICE_CHOICES)
    return value


@dataclass
class TokenpipeConfig:
    """Global application configuration."""

    # Root directory (~/.tokenpipe by default)
    home_dir: Path = field(
        default_factory=lambda: Path(
            os.environ.get("TOKENPIPE_HOME", Path.home() / ".tokenpipe")
        )
    )

    @property
    def models_dir(self) -> Path:
        return self.home_dir / "models"

    @property
    def registry_path(self) -> Path:
        return self.home_dir / "models.json"

    # Server
    host: str = "127.0.0.1"
    port: int = 11434

    # Backends
    device: str = field(default_factory=_env_device)  # auto | cpu | gpu
    quantization: str | None = field(
        default_factory=lambda: os.environ.get("TOKENPIPE_QUANTIZATION") or None
    )
    memory_limit: int | None = field(
        default_factory=lambda: _env_int("TOKENPIPE_MEMORY_LIMIT")
    )  # bytes, None = device budget
    default_ctx_size: int = 4096
    default_threads: int = 0  # 0 = auto-detect

    # Generation
    tool_timeout: float | None = field(
        default_factory=lambda: _env_float("TOKENPIPE_TOOL_TIMEOUT")
    )  # seconds, None = wait indefinitely
    tool_buffer_limit: int = 8192  # chars buffered inside a tool-call marker before flushing as text

    def ensure_dirs(self):
        """Creates the required directories."""
        self.models_dir.mkdir(parents=True, exist_ok=True)
        if not self.registry_path.exists():
            self.registry_path.write_text("[]")


# Global instance
config = TokenpipeConfig()
config.ensure_dirs()
