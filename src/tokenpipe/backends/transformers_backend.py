# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Compute backend based on HuggingFace Transformers.

Uses the model in its native format (safetensors) on CPU or a CUDA GPU.
Supports dynamic quantization via bitsandbytes (GPU only).

Each session owns its ``past_key_values``; the weights are only read, so
sessions step concurrently on the same handle.
"""

from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any, Sequence

from tokenpipe.backends.base import (
    Backend,
    BackendKind,
    BackendOptions,
    DeviceInfo,
    ModelSource,
    StepOutput,
    Tokenizer,
    estimate_weight_bytes,
    system_memory,
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


def _is_oom(exc: BaseException) -> bool:
    return type(exc).__name__ == "OutOfMemoryError" or "out of memory" in str(exc).lower()


class TransformersTokenizer(Tokenizer):
    def __init__(self, tokenizer: Any, extra_eos: Sequence[int] = ()):
        self._tokenizer = tokenizer
        eos = set(extra_eos)
        if getattr(tokenizer, "eos_token_id", None) is not None:
            eos.add(tokenizer.eos_token_id)
        self._eos = frozenset(eos)

    def encode(self, text: str, add_special: bool = True) -> list[int]:
        return list(self._tokenizer.encode(text, add_special_tokens=add_special))

    def decode(self, token_ids: Sequence[int]) -> str:
        # Tool-call markers are often added tokens; keep them in the text
        return self._tokenizer.decode(list(token_ids), skip_special_tokens=False)

    @property
    def eos_token_ids(self) -> frozenset[int]:
        return self._eos


@dataclass
class _TransformersState:
    past: Any = field(default=None, repr=False)
    n_tokens: int = 0


class TransformersBackend(Backend):
    """HuggingFace Transformers compute backend."""

    name = "transformers"
    concurrent_steps = True
    quantization_schemes = frozenset({"4bit", "8bit"})

    def __init__(
        self,
        kind: BackendKind,
        options: BackendOptions | None = None,
        torch_dtype: str = "auto",
        trust_remote_code: bool = False,
    ):
        super().__init__(kind, options)
        self.torch_dtype = torch_dtype
        self.trust_remote_code = trust_remote_code

    def load(self, source: ModelSource, policy: QuantizationPolicy) -> ModelHandle:
        """
        Loads a model from a local directory.

        The quantization policy maps to a BitsAndBytesConfig:
            "4bit": NF4 with double quantization, bfloat16 compute
            "8bit": LLM.int8()
        Modules in ``policy.skip_modules`` stay at full precision.
        """
        if source.format not in (ModelFormat.SAFETENSORS, ModelFormat.PYTORCH):
            raise UnsupportedModelError(
                source.model_id,
                f"transformers loads safetensors/pytorch models, got {source.format.value}",
            )
        if not self.supports_quantization(policy):
            raise UnsupportedModelError(
                source.model_id, f"Quantization '{policy.scheme}' is not supported (use 4bit or 8bit)"
            )
        if policy.bits and self.kind != BackendKind.GPU:
            raise UnsupportedModelError(
                source.model_id, "bitsandbytes quantization requires a CUDA GPU"
            )
        self.check_memory(source, policy)

        from transformers import AutoModelForCausalLM, AutoTokenizer

        load_kwargs = self.load_kwargs(policy)

        with ExitStack() as stack:
            try:
                tokenizer = AutoTokenizer.from_pretrained(
                    str(source.path), trust_remote_code=self.trust_remote_code
                )
                model = AutoModelForCausalLM.from_pretrained(str(source.path), **load_kwargs)
            except Exception as e:
                if _is_oom(e):
                    budget = self.options.memory_limit or self.device_info().memory_budget or 0
                    raise ResourceExhaustedError(
                        estimate_weight_bytes(source.path, policy), budget
                    ) from e
                if isinstance(e, FileNotFoundError):
                    raise ModelNotFoundError(source.model_id) from e
                raise UnsupportedModelError(source.model_id, f"{type(e).__name__}: {e}") from e
            stack.callback(self._empty_cache)
            model.eval()

            generation_config = getattr(model, "generation_config", None)
            extra_eos = getattr(generation_config, "eos_token_id", None)
            if isinstance(extra_eos, int):
                extra_eos = [extra_eos]

            handle = ModelHandle(
                model_id=source.model_id,
                backend=self,
                tokenizer=TransformersTokenizer(tokenizer, extra_eos or ()),
                weights=model,
                quantization=policy,
                context_length=source.context_length,
            )
            stack.pop_all()
        return handle

    def load_kwargs(self, policy: QuantizationPolicy) -> dict[str, Any]:
        """Keyword arguments for ``from_pretrained``. A no-op policy adds nothing."""
        load_kwargs: dict[str, Any] = {
            "device_map": "cpu" if self.kind == BackendKind.CPU else "cuda",
            "torch_dtype": self.torch_dtype,
            "trust_remote_code": self.trust_remote_code,
        }
        if self.kind == BackendKind.GPU and self.options.memory_limit:
            load_kwargs["device_map"] = "auto"
            load_kwargs["max_memory"] = {0: self.options.memory_limit}

        if policy.bits == 4:
            import torch
            from transformers import BitsAndBytesConfig

            load_kwargs["quantization_config"] = BitsAndBytesConfig(
                load_in_4bit=True,
                bnb_4bit_compute_dtype=torch.bfloat16,
                bnb_4bit_use_double_quant=True,
                bnb_4bit_quant_type="nf4",
                llm_int8_skip_modules=list(policy.skip_modules),
            )
        elif policy.bits == 8:
            from transformers import BitsAndBytesConfig

            load_kwargs["quantization_config"] = BitsAndBytesConfig(
                load_in_8bit=True,
                llm_int8_skip_modules=list(policy.skip_modules),
            )
        return load_kwargs

    def new_state(self, handle: ModelHandle) -> _TransformersState:
        return _TransformersState()

    def step(self, handle: ModelHandle, state: _TransformersState, token: int) -> StepOutput:
        return self._forward(handle, state, [token])

    def prefill(self, handle: ModelHandle, state: _TransformersState, tokens: Sequence[int]) -> StepOutput:
        if not tokens:
            raise ValueError("prefill requires at least one token")
        return self._forward(handle, state, list(tokens))

    def _forward(self, handle: ModelHandle, state: _TransformersState, tokens: list[int]) -> StepOutput:
        import torch

        model = handle.weights
        input_ids = torch.tensor([tokens], device=model.device)
        try:
            with handle.compute(), torch.no_grad():
                out = model(input_ids=input_ids, past_key_values=state.past, use_cache=True)
        except Exception as e:
            # DynamicCache is updated in place; drop whatever the failed pass appended
            crop = getattr(state.past, "crop", None)
            if callable(crop):
                crop(state.n_tokens)
            if _is_oom(e):
                self._empty_cache()
                raise TransientBackendError("Out of device memory during forward pass", str(e)) from e
            raise FatalBackendError("Forward pass failed", str(e)) from e

        logits = out.logits[0, -1].float().cpu().numpy()
        return StepOutput(
            logits=logits,
            state=_TransformersState(past=out.past_key_values, n_tokens=state.n_tokens + len(tokens)),
        )

    def release_state(self, state: _TransformersState) -> None:
        state.past = None

    def release(self, handle: ModelHandle) -> None:
        handle.weights = None
        self._empty_cache()

    def _empty_cache(self) -> None:
        import torch

        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    def device_info(self) -> DeviceInfo:
        if self.kind == BackendKind.CPU:
            return DeviceInfo(kind=self.kind, device="cpu", memory_budget=system_memory())

        import torch

        if not torch.cuda.is_available():
            return DeviceInfo(kind=self.kind, device="cuda")
        free, _total = torch.cuda.mem_get_info()
        return DeviceInfo(kind=self.kind, device="cuda:0", memory_budget=int(free))
