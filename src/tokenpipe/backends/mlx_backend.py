# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Compute backend based on mlx-lm, for Apple silicon.

CPU and GPU share one memory pool, so there is no placement decision: the
device preference is passed through and MLX decides where arrays live.
MLX graph evaluation is not thread-safe, so steps are serialized through the
handle's compute lock.
"""

from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any, Sequence

import mlx.core as mx
import mlx.nn as nn
import numpy as np
from mlx_lm import load as mlx_load
from mlx_lm.models.cache import make_prompt_cache, trim_prompt_cache

from tokenpipe.backends.base import (
    Backend,
    BackendKind,
    BackendOptions,
    DeviceInfo,
    ModelSource,
    StepOutput,
    Tokenizer,
    estimate_weight_bytes,
)
from tokenpipe.backends.quantization import QuantizationPolicy
from tokenpipe.exceptions import (
    FatalBackendError,
    ModelNotFoundError,
    ResourceExhaustedError,
    TransientBackendError,
    UnsupportedModelError,
)
from tokenpipe.models.formats import ModelFormat
from tokenpipe.models.handle import ModelHandle


class MlxTokenizer(Tokenizer):
    def __init__(self, tokenizer: Any):
        self._tokenizer = tokenizer

    def encode(self, text: str, add_special: bool = True) -> list[int]:
        return list(self._tokenizer.encode(text, add_special_tokens=add_special))

    def decode(self, token_ids: Sequence[int]) -> str:
        return self._tokenizer.decode(list(token_ids))

    @property
    def eos_token_ids(self) -> frozenset[int]:
        return frozenset(self._tokenizer.eos_token_ids)


@dataclass
class _MlxState:
    cache: list = field(default_factory=list, repr=False)
    n_tokens: int = 0


class MlxBackend(Backend):
    """mlx-lm compute backend (unified memory)."""

    name = "mlx"
    concurrent_steps = False
    quantization_schemes = frozenset({"4bit", "8bit"})

    def __init__(self, kind: BackendKind = BackendKind.UNIFIED, options: BackendOptions | None = None):
        if kind != BackendKind.UNIFIED:
            raise ValueError("The mlx backend only runs on unified memory")
        super().__init__(kind, options)

    def load(self, source: ModelSource, policy: QuantizationPolicy) -> ModelHandle:
        if source.format != ModelFormat.SAFETENSORS:
            raise UnsupportedModelError(
                source.model_id, f"mlx loads safetensors models, got {source.format.value}"
            )
        if not self.supports_quantization(policy):
            raise UnsupportedModelError(
                source.model_id, f"Quantization '{policy.scheme}' is not supported (use 4bit or 8bit)"
            )
        self.check_memory(source, policy)

        with ExitStack() as stack:
            try:
                model, tokenizer = mlx_load(str(source.path))
                stack.callback(mx.clear_cache)

                if policy.bits:
                    nn.quantize(
                        model,
                        group_size=policy.group_size,
                        bits=policy.bits,
                        class_predicate=lambda path, module: (
                            hasattr(module, "to_quantized") and policy.should_quantize(path)
                        ),
                    )
                    mx.eval(model.parameters())
            except FileNotFoundError as e:
                raise ModelNotFoundError(source.model_id) from e
            except Exception as e:
                if "memory" in str(e).lower():
                    budget = self.options.memory_limit or self.device_info().memory_budget or 0
                    raise ResourceExhaustedError(estimate_weight_bytes(source.path, policy), budget) from e
                raise UnsupportedModelError(source.model_id, f"{type(e).__name__}: {e}") from e

            handle = ModelHandle(
                model_id=source.model_id,
                backend=self,
                tokenizer=MlxTokenizer(tokenizer),
                weights=model,
                quantization=policy,
                context_length=source.context_length,
            )
            stack.pop_all()
        return handle

    def new_state(self, handle: ModelHandle) -> _MlxState:
        return _MlxState(cache=make_prompt_cache(handle.weights))

    def step(self, handle: ModelHandle, state: _MlxState, token: int) -> StepOutput:
        return self._forward(handle, state, [token])

    def prefill(self, handle: ModelHandle, state: _MlxState, tokens: Sequence[int]) -> StepOutput:
        if not tokens:
            raise ValueError("prefill requires at least one token")
        return self._forward(handle, state, list(tokens))

    def _forward(self, handle: ModelHandle, state: _MlxState, tokens: list[int]) -> StepOutput:
        with handle.compute():
            try:
                logits = handle.weights(mx.array([tokens]), cache=state.cache)
                last = logits[0, -1].astype(mx.float32)
                mx.eval(last)
            except RuntimeError as e:
                appended = _cache_offset(state.cache) - state.n_tokens
                if appended > 0:
                    trim_prompt_cache(state.cache, appended)
                if "memory" in str(e).lower():
                    raise TransientBackendError("Metal allocation failed", str(e)) from e
                raise FatalBackendError("Forward pass failed", str(e)) from e
        state.n_tokens += len(tokens)
        return StepOutput(logits=np.array(last, dtype=np.float32), state=state)

    def release_state(self, state: _MlxState) -> None:
        state.cache = []

    def release(self, handle: ModelHandle) -> None:
        handle.weights = None
        mx.clear_cache()

    def device_info(self) -> DeviceInfo:
        info_fn = getattr(mx, "device_info", None) or mx.metal.device_info
        info = info_fn()
        budget = info.get("max_recommended_working_set_size") or info.get("memory_size")
        return DeviceInfo(
            kind=self.kind,
            device="metal",
            memory_budget=int(budget) if budget else None,
            shared_pool=True,
        )


def _cache_offset(cache: list) -> int:
    if not cache:
        return 0
    return int(getattr(cache[0], "offset", 0))
