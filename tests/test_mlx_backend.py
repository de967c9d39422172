# SPDX-License-Identifier: HRUL-1.0
"""Tests for the mlx backend (mlx and mlx_lm are mocked)."""

import importlib
import sys
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from tokenpipe.backends.base import BackendKind, BackendOptions, ModelSource
from tokenpipe.backends.quantization import QuantizationPolicy
from tokenpipe.exceptions import FatalBackendError, TransientBackendError, UnsupportedModelError
from tokenpipe.models.formats import ModelFormat


@pytest.fixture
def mlx():
    """Mocks mlx, mlx.nn and mlx_lm and imports the backend against them."""
    mx = MagicMock()
    mx.device_info.return_value = {"max_recommended_working_set_size": 64 * 1024**3}
    nn = MagicMock()
    mlx_pkg = MagicMock(core=mx, nn=nn)
    mlx_lm = MagicMock()
    cache_mod = MagicMock()

    model = MagicMock()
    tokenizer = MagicMock()
    tokenizer.eos_token_ids = {2}
    mlx_lm.load.return_value = (model, tokenizer)
    cache_mod.make_prompt_cache.return_value = [SimpleNamespace(offset=0)]
    model.return_value.__getitem__.return_value.astype.return_value = np.array([0.1, 0.9, 0.3], dtype=np.float32)

    with patch.dict(
        sys.modules,
        {
            "mlx": mlx_pkg,
            "mlx.core": mx,
            "mlx.nn": nn,
            "mlx_lm": mlx_lm,
            "mlx_lm.models": MagicMock(cache=cache_mod),
            "mlx_lm.models.cache": cache_mod,
        },
    ):
        sys.modules.pop("tokenpipe.backends.mlx_backend", None)
        module = importlib.import_module("tokenpipe.backends.mlx_backend")
        yield SimpleNamespace(module=module, mx=mx, nn=nn, mlx_lm=mlx_lm, cache=cache_mod, model=model)


@pytest.fixture
def model_dir(temp_dir):
    (temp_dir / "config.json").write_text("{}")
    (temp_dir / "model.safetensors").write_bytes(b"\0" * 100)
    return temp_dir


def _source(path, fmt=ModelFormat.SAFETENSORS):
    return ModelSource(model_id="m", path=path, format=fmt)


class TestLoad:
    """Loading and quantization."""

    def test_unified_only(self, mlx):
        with pytest.raises(ValueError):
            mlx.module.MlxBackend(BackendKind.GPU)

    def test_noop_policy_does_not_quantize(self, mlx, model_dir):
        handle = mlx.module.MlxBackend().load(_source(model_dir), QuantizationPolicy())

        mlx.nn.quantize.assert_not_called()
        assert handle.weights is mlx.model
        assert not handle.quantized

    def test_noop_twice_leaves_weights_untouched(self, mlx, model_dir):
        """Two no-op loads hand back the raw weights both times."""
        backend = mlx.module.MlxBackend()

        first = backend.load(_source(model_dir), QuantizationPolicy())
        second = backend.load(_source(model_dir), QuantizationPolicy.parse("none"))

        assert first.weights is second.weights is mlx.model
        mlx.nn.quantize.assert_not_called()

    def test_4bit_quantizes_once(self, mlx, model_dir):
        handle = mlx.module.MlxBackend().load(_source(model_dir), QuantizationPolicy.parse("4bit"))

        mlx.nn.quantize.assert_called_once()
        kwargs = mlx.nn.quantize.call_args.kwargs
        assert kwargs["bits"] == 4
        assert kwargs["group_size"] == 64
        mlx.mx.eval.assert_called()
        assert handle.key.quantization == "4bit"

    def test_quantization_skips_lm_head(self, mlx, model_dir):
        mlx.module.MlxBackend().load(_source(model_dir), QuantizationPolicy.parse("8bit"))
        predicate = mlx.nn.quantize.call_args.kwargs["class_predicate"]
        linear = MagicMock(spec=["to_quantized"])

        assert predicate("model.layers.0.mlp.up_proj", linear)
        assert not predicate("lm_head", linear)
        assert not predicate("model.norm", object())

    def test_gguf_type_rejected(self, mlx, model_dir):
        with pytest.raises(UnsupportedModelError):
            mlx.module.MlxBackend().load(_source(model_dir), QuantizationPolicy.parse("Q4_K_M"))

    def test_pytorch_rejected(self, mlx, model_dir):
        with pytest.raises(UnsupportedModelError):
            mlx.module.MlxBackend().load(_source(model_dir, ModelFormat.PYTORCH), QuantizationPolicy())

    def test_unsupported_architecture(self, mlx, model_dir):
        mlx.mlx_lm.load.side_effect = ValueError("Model type mamba not supported.")

        with pytest.raises(UnsupportedModelError, match="Unsupported model: m"):
            mlx.module.MlxBackend().load(_source(model_dir), QuantizationPolicy())

    def test_missing_files_are_not_found(self, mlx, model_dir):
        from tokenpipe.exceptions import ModelNotFoundError

        mlx.mlx_lm.load.side_effect = FileNotFoundError("config.json")

        with pytest.raises(ModelNotFoundError):
            mlx.module.MlxBackend().load(_source(model_dir), QuantizationPolicy())

    def test_broken_tokenizer_is_unsupported(self, mlx, model_dir):
        mlx.mlx_lm.load.side_effect = OSError("Can't load tokenizer")

        with pytest.raises(UnsupportedModelError, match="OSError"):
            mlx.module.MlxBackend().load(_source(model_dir), QuantizationPolicy())

    def test_allocation_failure_while_quantizing(self, mlx, model_dir):
        """Running out of memory mid-load is a resource error and frees the cache."""
        from tokenpipe.exceptions import ResourceExhaustedError

        mlx.nn.quantize.side_effect = RuntimeError("[metal::malloc] Unable to allocate memory")

        with pytest.raises(ResourceExhaustedError):
            mlx.module.MlxBackend().load(_source(model_dir), QuantizationPolicy.parse("4bit"))

        mlx.mx.clear_cache.assert_called()

    def test_memory_limit(self, mlx, model_dir):
        from tokenpipe.exceptions import ResourceExhaustedError

        backend = mlx.module.MlxBackend(options=BackendOptions(memory_limit=10))

        with pytest.raises(ResourceExhaustedError):
            backend.load(_source(model_dir), QuantizationPolicy())


class TestForward:
    """Token steps."""

    @pytest.fixture
    def handle(self, mlx, model_dir):
        return mlx.module.MlxBackend().load(_source(model_dir), QuantizationPolicy())

    def test_prefill_and_step(self, mlx, handle):
        backend = handle.backend
        state = backend.new_state(handle)

        out = backend.prefill(handle, state, [1, 2, 3])
        assert int(np.argmax(out.logits)) == 1
        assert out.logits.dtype == np.float32
        out = backend.step(handle, out.state, 4)
        assert out.state.n_tokens == 4

        mlx.cache.make_prompt_cache.assert_called_once_with(handle.weights)
        assert mlx.model.call_args.kwargs["cache"] is state.cache

    def test_memory_error_is_transient_and_trims(self, mlx, handle):
        backend = handle.backend
        state = backend.new_state(handle)
        state.n_tokens = 3
        state.cache[0].offset = 4
        mlx.model.side_effect = RuntimeError("[metal::malloc] Unable to allocate memory")

        with pytest.raises(TransientBackendError):
            backend.step(handle, state, 1)

        mlx.cache.trim_prompt_cache.assert_called_once_with(state.cache, 1)
        assert state.n_tokens == 3

    def test_other_runtime_error_is_fatal(self, mlx, handle):
        backend = handle.backend
        mlx.model.side_effect = RuntimeError("Shapes cannot be broadcast")

        with pytest.raises(FatalBackendError):
            backend.step(handle, backend.new_state(handle), 1)

    def test_release(self, mlx, handle):
        backend = handle.backend
        state = backend.new_state(handle)
        backend.release_state(state)
        assert state.cache == []

        handle.evict()

        assert handle.weights is None
        mlx.mx.clear_cache.assert_called()


class TestDeviceInfo:
    def test_shared_pool(self, mlx):
        info = mlx.module.MlxBackend().device_info()

        assert info.kind == BackendKind.UNIFIED
        assert info.shared_pool
        assert info.memory_budget == 64 * 1024**3

    def test_tokenizer(self, mlx, model_dir):
        handle = mlx.module.MlxBackend().load(_source(model_dir), QuantizationPolicy())

        assert handle.tokenizer.eos_token_ids == frozenset({2})
