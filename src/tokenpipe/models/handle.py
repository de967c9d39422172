# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""Loaded model handle, shared read-only by generation sessions."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator, NamedTuple

from tokenpipe.backends.quantization import QuantizationPolicy

if TYPE_CHECKING:
    from tokenpipe.backends.base import Backend, BackendKind, DeviceInfo, Tokenizer

logger = logging.getLogger(__name__)


class HandleKey(NamedTuple):
    model_id: str
    backend_kind: "BackendKind"
    quantization: str  # scheme id or "none"


class ModelHandle:
    """Tokenizer + weights + the backend that owns them.

    Immutable after construction except for backend-internal state. Sessions
    hold a reference (``acquire``/``release``) so the weights are never freed
    while one of them is running; an evicted handle is freed when the last
    reference goes away.
    """

    def __init__(
        self,
        model_id: str,
        backend: "Backend",
        tokenizer: "Tokenizer",
        weights: Any,
        quantization: QuantizationPolicy,
        context_length: int = 4096,
    ):
        self.model_id = model_id
        self.backend = backend
        self.backend_kind = backend.kind
        self.tokenizer = tokenizer
        self.weights = weights
        self.quantization = quantization
        self.context_length = context_length
        # Serializes steps for backends that cannot run them concurrently
        self.compute_lock = threading.Lock()

        self._lock = threading.Lock()
        self._refs = 0
        self._evicted = False
        self._released = False

    @property
    def key(self) -> HandleKey:
        return HandleKey(self.model_id, self.backend_kind, self.quantization.cache_id)

    @property
    def quantized(self) -> bool:
        return not self.quantization.is_noop

    @property
    def device_info(self) -> "DeviceInfo":
        return self.backend.device_info()

    @property
    def active_sessions(self) -> int:
        return self._refs

    @property
    def is_released(self) -> bool:
        return self._released

    def acquire(self) -> None:
        with self._lock:
            if self._evicted or self._released:
                raise RuntimeError(f"Model handle {self.model_id} has been evicted")
            self._refs += 1

    def release(self) -> None:
        with self._lock:
            self._refs = max(self._refs - 1, 0)
            free = self._evicted and self._refs == 0 and not self._released
            if free:
                self._released = True
        if free:
            self._free()

    def evict(self) -> None:
        """Marks the handle for release; frees it now if no session uses it."""
        with self._lock:
            if self._released:
                return
            self._evicted = True
            free = self._refs == 0
            if free:
                self._released = True
        if free:
            self._free()
        else:
            logger.info(
                "Deferring release of %s until %d session(s) finish", self.model_id, self._refs
            )

    @contextmanager
    def compute(self) -> Iterator[None]:
        """Scope of one backend call on this handle."""
        if self.backend.concurrent_steps:
            yield
            return
        with self.compute_lock:
            yield

    def _free(self) -> None:
        logger.info("Releasing model %s (%s)", self.model_id, self.backend_kind.value)
        try:
            self.backend.release(self)
        finally:
            self.weights = None

    def __repr__(self) -> str:
        return (
            f"ModelHandle(model_id={self.model_id!r}, backend={self.backend.name}, "
            f"kind={self.backend_kind.value}, quantization={self.quantization.cache_id})"
        )
