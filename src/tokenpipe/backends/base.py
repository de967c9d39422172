# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""Abstract interface for compute backends."""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Sequence

import numpy as np

from tokenpipe.backends.quantization import QuantizationPolicy
from tokenpipe.exceptions import InvalidConfigError, ResourceExhaustedError
from tokenpipe.models.formats import ModelFormat, weight_files

if TYPE_CHECKING:
    from tokenpipe.models.handle import ModelHandle


class BackendKind(Enum):
    CPU = "cpu"
    GPU = "gpu"
    UNIFIED = "unified"  # one memory pool shared by CPU and GPU roles


class DevicePreference(Enum):
    CPU = "cpu"
    GPU = "gpu"
    AUTO = "auto"

    @classmethod
    def parse(cls, value: "str | DevicePreference") -> "DevicePreference":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidConfigError(
                "device_preference", str(value), [p.value for p in cls]
            ) from None


@dataclass(frozen=True)
class BackendOptions:
    device_preference: DevicePreference = DevicePreference.AUTO
    quantization: str | None = None  # None or a scheme id
    memory_limit: int | None = None  # bytes


@dataclass(frozen=True)
class DeviceInfo:
    kind: BackendKind
    device: str  # "cpu", "cuda:0", "metal", ...
    memory_budget: int | None = None  # bytes, None if unknown
    shared_pool: bool = False


@dataclass(frozen=True)
class ModelSource:
    """A resolved model: where the weights live and in which format."""

    model_id: str
    path: Path
    format: ModelFormat
    context_length: int = 4096


@dataclass
class StepOutput:
    logits: np.ndarray  # 1-D float32 over the vocabulary
    state: Any


class Tokenizer(ABC):
    """Text <-> token ids, owned by a ModelHandle."""

    @abstractmethod
    def encode(self, text: str, add_special: bool = True) -> list[int]: ...

    @abstractmethod
    def decode(self, token_ids: Sequence[int]) -> str: ...

    @property
    @abstractmethod
    def eos_token_ids(self) -> frozenset[int]: ...


class Backend(ABC):
    """Interface that all compute backends must implement.

    A backend instance is bound to one BackendKind at construction; every
    handle it loads keeps a reference to it. ``step`` never mutates shared weights, only the
    per-session state it is given. A step that raises TransientBackendError
    leaves that state untouched so the caller can retry it.
    """

    name: str = "backend"
    # Whether steps of different sessions may run in parallel on one handle.
    concurrent_steps: bool = False
    quantization_schemes: frozenset[str] = frozenset()

    def __init__(self, kind: BackendKind, options: BackendOptions | None = None):
        self.kind = kind
        self.options = options or BackendOptions()

    @abstractmethod
    def load(self, source: ModelSource, policy: QuantizationPolicy) -> "ModelHandle":
        """Loads and quantizes a model. Releases everything allocated on failure."""
        ...

    @abstractmethod
    def new_state(self, handle: "ModelHandle") -> Any:
        """Allocates per-session scratch state (KV cache or equivalent)."""
        ...

    @abstractmethod
    def step(self, handle: "ModelHandle", state: Any, token: int) -> StepOutput:
        """Feeds one token and returns the logits for the next position."""
        ...

    def prefill(self, handle: "ModelHandle", state: Any, tokens: Sequence[int]) -> StepOutput:
        """Feeds several tokens at once. Backends override this with a batched pass."""
        if not tokens:
            raise ValueError("prefill requires at least one token")
        output = None
        for token in tokens:
            output = self.step(handle, state, token)
            state = output.state
        return output

    def release_state(self, state: Any) -> None:
        """Frees per-session scratch state."""
        return None

    @abstractmethod
    def release(self, handle: "ModelHandle") -> None:
        """Frees the weights and any device memory held by the handle."""
        ...

    @abstractmethod
    def device_info(self) -> DeviceInfo: ...

    def supports_quantization(self, policy: QuantizationPolicy) -> bool:
        return policy.is_noop or policy.scheme in self.quantization_schemes

    def check_memory(self, source: ModelSource, policy: QuantizationPolicy) -> None:
        """Raises ResourceExhaustedError if the weights cannot fit the budget."""
        budget = self.options.memory_limit
        if budget is None:
            budget = self.device_info().memory_budget
        if budget is None:
            return
        required = estimate_weight_bytes(source.path, policy)
        if required > budget:
            raise ResourceExhaustedError(required, budget)


def estimate_weight_bytes(path: Path, policy: QuantizationPolicy) -> int:
    """Size of the weight files on disk, scaled by the quantization scheme."""
    total = sum(f.stat().st_size for f in weight_files(path))
    return int(total * policy.size_factor)


def system_memory() -> int | None:
    """Total physical memory in bytes, None when the platform does not report it."""
    try:
        return os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES")
    except (ValueError, OSError, AttributeError):
        return None
