# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Automatic compute backend selection.

Device preference -> BackendKind:
  1. AUTO on Apple silicon -> UNIFIED
  2. AUTO with an NVIDIA GPU -> GPU
  3. AUTO otherwise -> CPU
  GPU on a unified-memory host resolves to UNIFIED (no exclusive placement).

BackendKind + model format -> implementation:
  GGUF                       -> llama.cpp (any kind)
  safetensors on UNIFIED     -> mlx-lm
  safetensors/pytorch on CPU/GPU -> transformers
  pytorch on UNIFIED         -> transformers on CPU (mlx reads safetensors only)
"""

import logging
import platform
import sys

from tokenpipe.backends.base import (
    Backend,
    BackendKind,
    BackendOptions,
    DeviceInfo,
    DevicePreference,
    system_memory,
)
from tokenpipe.exceptions import MissingDependencyError, UnsupportedModelError
from tokenpipe.models.formats import ModelFormat

logger = logging.getLogger(__name__)


def _get_llama_cpp_backend(kind: BackendKind, options: BackendOptions) -> Backend:
    """Lazy import of LlamaCppBackend."""
    try:
        from tokenpipe.backends.llama_cpp import LlamaCppBackend
    except ImportError as e:
        raise MissingDependencyError(
            "llama-cpp",
            "pip install tokenpipe[llama-cpp]\n\n"
            "For GPU support (CUDA):\n"
            '  CMAKE_ARGS="-DGGML_CUDA=on" pip install llama-cpp-python\n\n'
            "For macOS with Metal:\n"
            '  CMAKE_ARGS="-DGGML_METAL=on" pip install llama-cpp-python',
        ) from e
    return LlamaCppBackend(kind, options)


def _get_transformers_backend(kind: BackendKind, options: BackendOptions) -> Backend:
    """Lazy import of TransformersBackend."""
    try:
        import torch  # noqa: F401
        import transformers  # noqa: F401

        from tokenpipe.backends.transformers_backend import TransformersBackend
    except ImportError as e:
        raise MissingDependencyError(
            "transformers",
            "pip install tokenpipe[transformers]\n\n"
            "Or directly:\n"
            "  pip install transformers torch accelerate bitsandbytes",
        ) from e
    return TransformersBackend(kind, options)


def _get_mlx_backend(kind: BackendKind, options: BackendOptions) -> Backend:
    """Lazy import of MlxBackend."""
    try:
        from tokenpipe.backends.mlx_backend import MlxBackend
    except ImportError as e:
        raise MissingDependencyError(
            "mlx",
            "pip install tokenpipe[mlx]\n\nNote: mlx requires Apple silicon.",
        ) from e
    return MlxBackend(kind, options)


def resolve_backend_kind(preference: "DevicePreference | str") -> BackendKind:
    """Resolves a device preference to a concrete BackendKind, once, at load time."""
    preference = DevicePreference.parse(preference)

    if preference == DevicePreference.CPU:
        return BackendKind.CPU
    if _has_unified_memory():
        return BackendKind.UNIFIED
    if preference == DevicePreference.GPU:
        if not _has_cuda():
            logger.warning("GPU requested but CUDA is not available")
        return BackendKind.GPU
    return BackendKind.GPU if _has_cuda() else BackendKind.CPU


def select_backend(
    kind: BackendKind,
    fmt: ModelFormat,
    options: BackendOptions | None = None,
    model_id: str = "",
) -> Backend:
    """
    Selects and instantiates the backend for a kind and a model format.

    Raises:
        UnsupportedModelError: no backend handles the combination
        MissingDependencyError: the backend's library is not installed
    """
    options = options or BackendOptions()

    if fmt == ModelFormat.GGUF:
        return _get_llama_cpp_backend(kind, options)

    if fmt == ModelFormat.SAFETENSORS and kind == BackendKind.UNIFIED:
        return _get_mlx_backend(kind, options)

    if fmt in (ModelFormat.SAFETENSORS, ModelFormat.PYTORCH) and kind != BackendKind.UNIFIED:
        return _get_transformers_backend(kind, options)

    if fmt == ModelFormat.PYTORCH and kind == BackendKind.UNIFIED:
        logger.info("%s is a PyTorch checkpoint; running it with transformers on CPU", model_id or "model")
        return _get_transformers_backend(BackendKind.CPU, options)

    raise UnsupportedModelError(
        model_id or "model", f"No backend runs {fmt.value} models on {kind.value}"
    )


def _has_cuda() -> bool:
    try:
        import torch

        return torch.cuda.is_available()
    except ImportError:
        return False


def _has_unified_memory() -> bool:
    return sys.platform == "darwin" and platform.machine() == "arm64"


def available_devices() -> list[DeviceInfo]:
    """Compute devices this host offers, CPU first."""
    devices = [DeviceInfo(kind=BackendKind.CPU, device="cpu", memory_budget=system_memory())]
    if _has_unified_memory():
        devices.append(
            DeviceInfo(
                kind=BackendKind.UNIFIED,
                device="metal",
                memory_budget=system_memory(),
                shared_pool=True,
            )
        )
    elif _has_cuda():
        import torch

        for index in range(torch.cuda.device_count()):
            props = torch.cuda.get_device_properties(index)
            devices.append(
                DeviceInfo(kind=BackendKind.GPU, device=f"cuda:{index}", memory_budget=int(props.total_memory))
            )
    return devices
