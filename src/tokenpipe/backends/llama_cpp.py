# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Compute backend based on llama-cpp-python.

Runs GGUF models on CPU, CUDA or Metal. Quantization is baked into the GGUF
file, so a policy selects which file of the model directory gets loaded.

One llama.cpp context is shared by every session of a handle. The context is
a backend-internal cache: sessions take turns on it under the handle's
compute lock, and the state of a session that loses the context is saved
with ``save_state`` and restored with ``load_state`` when it steps again.
"""

import os
import sys
import threading
from contextlib import ExitStack, contextmanager, nullcontext
from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np
from llama_cpp import Llama

from tokenpipe.backends.base import (
    Backend,
    BackendKind,
    BackendOptions,
    DeviceInfo,
    ModelSource,
    StepOutput,
    Tokenizer,
    system_memory,
)
from tokenpipe.backends.quantization import GGUF_TYPES, QuantizationPolicy, select_gguf_file
from tokenpipe.exceptions import (
    FatalBackendError,
    TransientBackendError,
    UnsupportedModelError,
)
from tokenpipe.models.formats import ModelFormat, weight_files
from tokenpipe.models.handle import ModelHandle


@contextmanager
def _suppress_stderr():
    """Temporarily suppresses stderr (to silence Metal/CUDA logs)."""
    stderr_fd = sys.stderr.fileno()
    saved_fd = os.dup(stderr_fd)
    try:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, stderr_fd)
        os.close(devnull)
        yield
    finally:
        os.dup2(saved_fd, stderr_fd)
        os.close(saved_fd)


class LlamaCppTokenizer(Tokenizer):
    def __init__(self, model: Llama):
        self._model = model

    def encode(self, text: str, add_special: bool = True) -> list[int]:
        return self._model.tokenize(text.encode("utf-8"), add_bos=add_special, special=True)

    def decode(self, token_ids: Sequence[int]) -> str:
        return self._model.detokenize(list(token_ids)).decode("utf-8", errors="replace")

    @property
    def eos_token_ids(self) -> frozenset[int]:
        return frozenset({self._model.token_eos()})


@dataclass
class _LlamaWeights:
    model: Llama
    active: Any = None  # session state currently living in the context


@dataclass
class _LlamaSessionState:
    weights: _LlamaWeights
    # the handle's compute lock; guards weights.active
    lock: threading.Lock = field(repr=False)
    n_tokens: int = 0
    snapshot: Any = field(default=None, repr=False)


class LlamaCppBackend(Backend):
    """llama.cpp compute backend."""

    name = "llama-cpp"
    concurrent_steps = False
    quantization_schemes = frozenset(GGUF_TYPES)

    def __init__(
        self,
        kind: BackendKind,
        options: BackendOptions | None = None,
        n_threads: int = 0,
        verbose: bool = False,
    ):
        super().__init__(kind, options)
        self.n_threads = n_threads
        self.verbose = verbose

    @property
    def n_gpu_layers(self) -> int:
        # -1 = every layer on the accelerator; unified memory needs no split decision
        return 0 if self.kind == BackendKind.CPU else -1

    def load(self, source: ModelSource, policy: QuantizationPolicy) -> ModelHandle:
        if source.format != ModelFormat.GGUF:
            raise UnsupportedModelError(
                source.model_id, f"llama.cpp loads GGUF models, got {source.format.value}"
            )
        if not self.supports_quantization(policy):
            raise UnsupportedModelError(
                source.model_id,
                f"Quantization '{policy.scheme}' is not a GGUF type. Use one of: Q4_K_M, Q5_K_M, Q8_0, ...",
            )

        if source.path.is_file():
            files = [source.path]
        else:
            files = [f for f in weight_files(source.path) if f.suffix.lower() == ".gguf"]
        model_file = select_gguf_file(files, policy.scheme)
        if model_file is None:
            raise UnsupportedModelError(
                source.model_id, f"No GGUF file with quantization {policy.scheme} in {source.path}"
            )
        self.check_memory(ModelSource(source.model_id, model_file, source.format), policy)

        with ExitStack() as stack:
            context = _suppress_stderr if not self.verbose else nullcontext
            try:
                with context():
                    model = Llama(
                        model_path=str(model_file),
                        n_ctx=source.context_length,
                        n_gpu_layers=self.n_gpu_layers,
                        n_threads=self.n_threads or None,
                        verbose=self.verbose,
                    )
            except ValueError as e:
                raise UnsupportedModelError(source.model_id, str(e)) from e
            stack.callback(_close_model, model)

            handle = ModelHandle(
                model_id=source.model_id,
                backend=self,
                tokenizer=LlamaCppTokenizer(model),
                weights=_LlamaWeights(model=model),
                quantization=policy,
                context_length=source.context_length,
            )
            stack.pop_all()
        return handle

    def new_state(self, handle: ModelHandle) -> _LlamaSessionState:
        return _LlamaSessionState(weights=handle.weights, lock=handle.compute_lock)

    def step(self, handle: ModelHandle, state: _LlamaSessionState, token: int) -> StepOutput:
        return self._eval(handle, state, [token])

    def prefill(self, handle: ModelHandle, state: _LlamaSessionState, tokens: Sequence[int]) -> StepOutput:
        if not tokens:
            raise ValueError("prefill requires at least one token")
        return self._eval(handle, state, list(tokens))

    def _eval(self, handle: ModelHandle, state: _LlamaSessionState, tokens: list[int]) -> StepOutput:
        weights: _LlamaWeights = handle.weights
        model = weights.model
        if state.n_tokens + len(tokens) > model.n_ctx():
            raise FatalBackendError(
                "Context window exhausted",
                f"{state.n_tokens + len(tokens)} tokens exceed n_ctx={model.n_ctx()}",
            )

        with handle.compute():
            if weights.active is not state:
                if weights.active is not None:
                    weights.active.snapshot = model.save_state()
                if state.snapshot is None:
                    model.reset()
                else:
                    model.load_state(state.snapshot)
                weights.active = state

            try:
                model.eval(tokens)
            except RuntimeError as e:
                # eval() trims the KV cache to n_tokens on its next call
                model.n_tokens = state.n_tokens
                raise TransientBackendError("llama_decode failed", str(e)) from e

            logits = np.array(model.scores[model.n_tokens - 1], dtype=np.float32, copy=True)
            state.n_tokens = model.n_tokens
            state.snapshot = None
        return StepOutput(logits=logits, state=state)

    def release_state(self, state: _LlamaSessionState) -> None:
        # Another session may be swapping its snapshot in on its own thread
        with state.lock:
            if state.weights.active is state:
                state.weights.active = None
            state.snapshot = None

    def release(self, handle: ModelHandle) -> None:
        weights: _LlamaWeights | None = handle.weights
        if weights is not None:
            weights.active = None
            _close_model(weights.model)

    def device_info(self) -> DeviceInfo:
        if self.kind == BackendKind.CPU:
            return DeviceInfo(kind=self.kind, device="cpu", memory_budget=system_memory())
        if self.kind == BackendKind.UNIFIED:
            return DeviceInfo(
                kind=self.kind, device="metal", memory_budget=system_memory(), shared_pool=True
            )
        # llama.cpp does not report VRAM; rely on memory_limit when set
        return DeviceInfo(kind=self.kind, device="gpu")


def _close_model(model: Llama) -> None:
    close = getattr(model, "close", None)
    if callable(close):
        close()
