# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Next-token sampling over backend logits.

Runs on numpy so every backend samples the same way: the backend returns the
logits of the last position and the session picks the token. A seeded
``numpy.random.Generator`` makes the choice reproducible for a fixed seed and
backend (logits themselves may differ across backends by float error).
"""

import numpy as np

from tokenpipe.pipeline.types import SamplingParams


def log_softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - np.max(logits)
    return shifted - np.log(np.sum(np.exp(shifted)))


def greedy_sampling(logits: np.ndarray) -> int:
    """Greedy sampling (argmax)."""
    return int(np.argmax(logits))


def top_k_filter(logits: np.ndarray, k: int) -> np.ndarray:
    """Keeps the k highest logits; the rest become -inf."""
    if k <= 0 or k >= logits.shape[-1]:
        return logits
    kth = np.partition(logits, -k)[-k]
    return np.where(logits < kth, -np.inf, logits)


def top_p_filter(logits: np.ndarray, p: float) -> np.ndarray:
    """Nucleus filter: smallest set of tokens whose probability mass reaches p."""
    if p >= 1.0:
        return logits

    order = np.argsort(-logits, kind="stable")
    probs = np.exp(log_softmax(logits[order]))
    cumulative = np.cumsum(probs)
    # Shift right so the token crossing the threshold is kept
    remove = np.empty_like(cumulative, dtype=bool)
    remove[0] = False
    remove[1:] = cumulative[:-1] >= p

    filtered = logits.copy()
    filtered[order[remove]] = -np.inf
    return filtered


class Sampler:
    """Stateful sampler for one session (owns the random generator)."""

    def __init__(self, params: SamplingParams):
        self.params = params
        self._rng = np.random.default_rng(params.seed)

    def sample(self, logits: np.ndarray) -> tuple[int, float | None]:
        """
        Picks the next token.

        Returns:
            (token id, log-probability under the unmodified model distribution,
            or None when logprobs were not requested)
        """
        logits = np.asarray(logits, dtype=np.float64).reshape(-1)
        params = self.params

        if params.temperature == 0.0:
            token = greedy_sampling(logits)
        else:
            scaled = logits / params.temperature
            scaled = top_k_filter(scaled, params.top_k)
            scaled = top_p_filter(scaled, params.top_p)
            probs = np.exp(log_softmax(scaled))
            token = int(self._rng.choice(probs.shape[-1], p=probs / probs.sum()))

        logprob = float(log_softmax(logits)[token]) if params.logprobs else None
        return token, logprob
