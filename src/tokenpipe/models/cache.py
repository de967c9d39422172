# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Process-wide cache of loaded models.

A model is loaded once per (model id, backend kind, quantization scheme).
Concurrent requests for the same key wait for the load already in flight
instead of starting their own; the cache lock only guards the maps, never a
load, so different keys load in parallel.

Lifecycle: the registry is created on first use (``get_model_cache``),
handles are released by ``evict``/``clear`` and at process exit.
"""

import atexit
import logging
import threading
import time
from concurrent.futures import Future
from typing import Callable

from tokenpipe.backends.base import Backend, BackendKind, BackendOptions, DevicePreference, ModelSource
from tokenpipe.backends.quantization import QuantizationPolicy
from tokenpipe.backends.selector import resolve_backend_kind, select_backend
from tokenpipe.config import config
from tokenpipe.models.formats import ModelFormat
from tokenpipe.models.handle import HandleKey, ModelHandle
from tokenpipe.models.registry import resolve_model_source

logger = logging.getLogger(__name__)

_PREFERENCE_FOR_KIND = {
    BackendKind.CPU: DevicePreference.CPU,
    BackendKind.GPU: DevicePreference.GPU,
    BackendKind.UNIFIED: DevicePreference.AUTO,
}

BackendFactory = Callable[[BackendKind, ModelFormat, BackendOptions, str], Backend]


class ModelCache:
    """Loads models at most once per configuration and shares the handles."""

    def __init__(
        self,
        backend_factory: BackendFactory = select_backend,
        resolver: Callable[[str], ModelSource] = resolve_model_source,
    ):
        self._backend_factory = backend_factory
        self._resolver = resolver
        self._lock = threading.Lock()
        self._handles: dict[HandleKey, ModelHandle] = {}
        self._inflight: dict[HandleKey, Future] = {}

    def get_or_load(
        self,
        model_id: str,
        backend_kind: "BackendKind | str | None" = None,
        quantization: "QuantizationPolicy | str | None" = None,
        memory_limit: int | None = None,
        device_preference: "DevicePreference | str | None" = None,
    ) -> ModelHandle:
        """
        Returns the handle for a configuration, loading it if needed.

        Args:
            model_id: Registry name, alias or local path
            backend_kind: Concrete kind; resolved from device_preference when None
            quantization: Scheme id or policy; config default when None
            memory_limit: Bytes available to the weights; config default when None
            device_preference: "cpu", "gpu" or "auto"; config default when None

        Raises:
            LoadError: The load failed. Nothing is cached and nothing is retried.
        """
        policy = QuantizationPolicy.parse(
            quantization if quantization is not None else config.quantization
        )
        if backend_kind is None:
            kind = resolve_backend_kind(device_preference or config.device)
        else:
            kind = BackendKind(backend_kind)
        key = HandleKey(model_id, kind, policy.cache_id)

        with self._lock:
            handle = self._handles.get(key)
            if handle is not None:
                return handle
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future

        if not owner:
            logger.debug("Waiting for in-flight load of %s", model_id)
            return future.result()

        try:
            handle = self._load(model_id, kind, policy, memory_limit)
        except BaseException as e:
            with self._lock:
                del self._inflight[key]
            future.set_exception(e)
            raise

        with self._lock:
            self._handles[key] = handle
            del self._inflight[key]
        future.set_result(handle)
        return handle

    def _load(
        self,
        model_id: str,
        kind: BackendKind,
        policy: QuantizationPolicy,
        memory_limit: int | None,
    ) -> ModelHandle:
        source = self._resolver(model_id)
        options = BackendOptions(
            device_preference=_PREFERENCE_FOR_KIND[kind],
            quantization=policy.scheme,
            memory_limit=memory_limit if memory_limit is not None else config.memory_limit,
        )
        backend = self._backend_factory(kind, source.format, options, model_id)

        logger.info(
            "Loading %s on %s (%s, quantization=%s)",
            model_id,
            kind.value,
            backend.name,
            policy.cache_id,
        )
        t0 = time.perf_counter()
        handle = backend.load(source, policy)
        logger.info("Loaded %s in %.2fs", model_id, time.perf_counter() - t0)
        return handle

    def loaded(self) -> list[ModelHandle]:
        with self._lock:
            return list(self._handles.values())

    def evict(self, model_id: str) -> int:
        """Evicts every configuration of a model. Returns how many handles were evicted.

        Handles still used by sessions are released when their last session ends.
        """
        with self._lock:
            keys = [k for k in self._handles if k.model_id == model_id]
            handles = [self._handles.pop(k) for k in keys]
        for handle in handles:
            handle.evict()
        return len(handles)

    def clear(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle.evict()


_cache: ModelCache | None = None
_cache_lock = threading.Lock()


def get_model_cache() -> ModelCache:
    """The process-wide model cache, created on first use."""
    global _cache
    with _cache_lock:
        if _cache is None:
            _cache = ModelCache()
            atexit.register(_cache.clear)
        return _cache
