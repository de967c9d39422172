# SPDX-License-Identifier: HRUL-1.0
"""
Shared pytest fixtures.

The pipeline tests run against a scripted character-level backend: token id
= character code, id 0 = end of sequence. Each prefill starts the next
scripted turn and each step makes the next character of that turn the
argmax of the logits, so generation replays the script exactly.
"""

import sys
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from tokenpipe.backends.base import (
    Backend,
    BackendKind,
    DeviceInfo,
    ModelSource,
    StepOutput,
    Tokenizer,
)
from tokenpipe.backends.quantization import QuantizationPolicy
from tokenpipe.models.formats import ModelFormat
from tokenpipe.models.handle import ModelHandle

VOCAB_SIZE = 256
EOS = 0


class CharTokenizer(Tokenizer):
    def encode(self, text: str, add_special: bool = True) -> list[int]:
        return [ord(c) for c in text]

    def decode(self, token_ids: Sequence[int]) -> str:
        return "".join(chr(i) for i in token_ids if i != EOS)

    @property
    def eos_token_ids(self) -> frozenset[int]:
        return frozenset({EOS})


@dataclass
class ScriptState:
    turn: int = -1
    pos: int = 0
    n_tokens: int = 0


class ScriptedBackend(Backend):
    """Replays scripted turns; records every call for assertions."""

    name = "scripted"
    concurrent_steps = True
    quantization_schemes = frozenset({"4bit", "8bit"})

    def __init__(
        self,
        turns: Sequence[str] = ("Hello!",),
        kind: BackendKind = BackendKind.CPU,
        noisy: bool = False,
        load_delay: float = 0.0,
        on_step: Callable[[int], None] | None = None,
        step_errors: dict[int, list[Exception]] | None = None,
    ):
        super().__init__(kind)
        self.turns = list(turns)
        self.noisy = noisy
        self.load_delay = load_delay
        self.on_step = on_step
        self.step_errors = step_errors or {}

        self.loads = 0
        self.steps = 0
        self.prefills: list[list[int]] = []
        self.released_states = 0
        self.released_handles = 0
        self._lock = threading.Lock()

    def load(self, source: ModelSource, policy: QuantizationPolicy) -> ModelHandle:
        with self._lock:
            self.loads += 1
        if self.load_delay:
            time.sleep(self.load_delay)
        return ModelHandle(
            model_id=source.model_id,
            backend=self,
            tokenizer=CharTokenizer(),
            weights=self.turns,
            quantization=policy,
            context_length=source.context_length,
        )

    def new_state(self, handle: ModelHandle) -> ScriptState:
        return ScriptState()

    def _logits(self, state: ScriptState) -> np.ndarray:
        turn = self.turns[state.turn] if state.turn < len(self.turns) else ""
        target = ord(turn[state.pos]) if state.pos < len(turn) else EOS
        if self.noisy:
            rng = np.random.default_rng(state.n_tokens)
            logits = rng.normal(0.0, 1.0, VOCAB_SIZE).astype(np.float32)
            logits[EOS] = -1e9
        else:
            logits = np.full(VOCAB_SIZE, -10.0, dtype=np.float32)
        logits[target] = 10.0
        return logits

    def prefill(self, handle: ModelHandle, state: ScriptState, tokens: Sequence[int]) -> StepOutput:
        self.prefills.append(list(tokens))
        state.turn += 1
        state.pos = 0
        state.n_tokens += len(tokens)
        return StepOutput(logits=self._logits(state), state=state)

    def step(self, handle: ModelHandle, state: ScriptState, token: int) -> StepOutput:
        with self._lock:
            self.steps += 1
            step_index = self.steps
        errors = self.step_errors.get(step_index)
        if errors:
            raise errors.pop(0)
        if self.on_step is not None:
            self.on_step(step_index)
        state.pos += 1
        state.n_tokens += 1
        return StepOutput(logits=self._logits(state), state=state)

    def release_state(self, state: ScriptState) -> None:
        self.released_states += 1

    def release(self, handle: ModelHandle) -> None:
        self.released_handles += 1

    def device_info(self) -> DeviceInfo:
        return DeviceInfo(kind=self.kind, device="cpu", memory_budget=None)


def scripted_source(model_id: str) -> ModelSource:
    return ModelSource(model_id=model_id, path=Path("/nonexistent"), format=ModelFormat.SAFETENSORS)


@pytest.fixture
def temp_dir():
    """Temporary directory for a test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_config(temp_dir, monkeypatch):
    """Isolated configuration rooted in a temporary directory."""
    from tokenpipe.config import TokenpipeConfig

    test_config = TokenpipeConfig(home_dir=temp_dir)
    test_config.ensure_dirs()

    import tokenpipe.config

    monkeypatch.setattr(tokenpipe.config, "config", test_config)

    # Modules that imported the instance directly
    import tokenpipe.models.cache
    import tokenpipe.models.registry
    import tokenpipe.pipeline.orchestrator

    monkeypatch.setattr(tokenpipe.models.registry, "config", test_config)
    monkeypatch.setattr(tokenpipe.models.cache, "config", test_config)
    monkeypatch.setattr(tokenpipe.pipeline.orchestrator, "config", test_config)

    yield test_config


@pytest.fixture
def scripted_backend():
    """Factory for scripted backends."""
    return ScriptedBackend


@pytest.fixture
def model_source():
    """Resolver that maps any model id to a placeholder safetensors source."""
    return scripted_source


@pytest.fixture
def make_cache(temp_config):
    """Builds a ModelCache that loads every model with the given backend."""
    from tokenpipe.models.cache import ModelCache

    def _make(backend: Backend) -> ModelCache:
        return ModelCache(
            backend_factory=lambda kind, fmt, options, model_id: backend,
            resolver=scripted_source,
        )

    return _make


@pytest.fixture
def make_pipeline(make_cache):
    """Builds a Pipeline over a scripted backend."""
    from tokenpipe.pipeline.orchestrator import Pipeline

    def _make(backend: Backend, default_model: str | None = "scripted") -> "Pipeline":
        return Pipeline(cache=make_cache(backend), default_model=default_model)

    return _make


@pytest.fixture
def sample_manifest(temp_dir):
    """Registered GGUF model with a real file on disk."""
    from tokenpipe.models.manifest import ModelManifest

    model_file = temp_dir / "test-model-Q4_K_M.gguf"
    model_file.write_bytes(b"GGUF" + b"\0" * 1020)
    return ModelManifest(
        name="test-model-q4_k_m",
        local_path=str(model_file),
        format="gguf",
        size_bytes=1024,
        quantization="Q4_K_M",
        architecture="llama",
        context_length=2048,
    )


@pytest.fixture
def populated_registry(temp_config, sample_manifest, temp_dir):
    """Registry with two models."""
    from tokenpipe.models.manifest import ModelManifest
    from tokenpipe.models.registry import ModelRegistry

    registry = ModelRegistry()
    registry.add(sample_manifest)

    model_dir = temp_dir / "another-model"
    model_dir.mkdir()
    (model_dir / "model.safetensors").write_bytes(b"\0" * 2048)
    registry.add(
        ModelManifest(
            name="another-model",
            alias="other",
            local_path=str(model_dir),
            format="safetensors",
            size_bytes=2048,
        )
    )
    return registry


@pytest.fixture
def mock_llama_cpp():
    """Mock of the whole llama_cpp module."""
    mock_llama = MagicMock()
    mock_llama_class = MagicMock()
    mock_llama.Llama = mock_llama_class

    with patch.dict(sys.modules, {"llama_cpp": mock_llama}):
        yield mock_llama_class
