"""
npu-router :: Sampling Benchmark

Per-step cost of the pieces on the hot path:
  - sample_token over a vocab-sized logits vector (greedy / top-k / top-p / full)
  - keyword intent detection
  - the generation loop against an in-process fake backend

INL - 2025
"""

import time

import numpy as np
import torch

from npu_router.core.backend import CallableBackend
from npu_router.core.config import ModelConfig
from npu_router.core.sampling import SamplingParams, GenerationState, sample_token
from npu_router.core.tokenizer import EOS_TOKEN_ID, VocabTokenizer
from npu_router.engine.router import detect_intent
from npu_router.engine.session import ModelSession


_MODES = {
    "greedy": SamplingParams(temperature=0.0, repetition_penalty=1.0),
    "top_k": SamplingParams(temperature=0.7, top_k=40, top_p=1.0, repetition_penalty=1.0),
    "top_p": SamplingParams(temperature=0.7, top_k=0, top_p=0.95, repetition_penalty=1.0),
    "full": SamplingParams(temperature=0.7, top_k=40, top_p=0.95, repetition_penalty=1.1),
}

_UTTERANCES = [
    "abre o chrome",
    "o que tem na minha tela",
    "explica esse código python",
    "conte uma história",
    "bom dia",
    "manda um email para o joão",
]


def bench_sample_token(vocab_size: int, mode: str = "full", n_iters: int = 200):
    """Benchmark one sampling step."""
    params = _MODES[mode]
    logits = torch.randn(vocab_size)
    generator = torch.Generator().manual_seed(0)
    state = GenerationState(list(range(0, min(vocab_size, 64))))

    # Warmup
    for _ in range(10):
        sample_token(logits, params, GenerationState(list(state.token_ids)), generator=generator)

    start = time.perf_counter()
    for _ in range(n_iters):
        sample_token(logits, params, GenerationState(list(state.token_ids)), generator=generator)
    elapsed = time.perf_counter() - start

    return {
        "mode": mode,
        "vocab_size": vocab_size,
        "us_per_call": round(elapsed / n_iters * 1e6, 2),
    }


def bench_intent_detection(n_iters: int = 10_000):
    """Benchmark keyword classification."""
    start = time.perf_counter()
    for i in range(n_iters):
        detect_intent(_UTTERANCES[i % len(_UTTERANCES)])
    elapsed = time.perf_counter() - start

    return {
        "calls": n_iters,
        "us_per_call": round(elapsed / n_iters * 1e6, 3),
    }


def bench_generation(vocab_size: int, max_tokens: int = 64):
    """Benchmark the autoregressive loop; the fake backend never emits EOS."""
    step_times = []

    def forward(input_ids, attention_mask):
        t0 = time.perf_counter()
        logits = torch.randn(1, input_ids.shape[1], vocab_size)
        logits[..., EOS_TOKEN_ID] = float("-inf")
        step_times.append(time.perf_counter() - t0)
        return logits

    vocab = {chr(ord("a") + i): 4 + i for i in range(26)}
    config = ModelConfig(name="bench", path="<memory>", max_tokens=max_tokens, temperature=0.7)
    session = ModelSession("bench", config, CallableBackend(forward), VocabTokenizer(vocab=vocab), seed=0)

    start = time.perf_counter()
    result = session.generate_result("bom dia")
    elapsed = time.perf_counter() - start
    session.close()

    tokens = max(result.num_tokens, 1)
    forward_ms = np.array(step_times) * 1000
    return {
        "tokens": result.num_tokens,
        "ms_per_token": round(elapsed / tokens * 1000, 3),
        "tokens_per_sec": int(tokens / elapsed) if elapsed > 0 else 0,
        "forward_p50_ms": round(float(np.percentile(forward_ms, 50)), 3) if len(forward_ms) else 0.0,
        "forward_p99_ms": round(float(np.percentile(forward_ms, 99)), 3) if len(forward_ms) else 0.0,
    }


if __name__ == "__main__":
    for mode in _MODES:
        print(bench_sample_token(32000, mode=mode))
    print(bench_intent_detection())
    print(bench_generation(32000))
