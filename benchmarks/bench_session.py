"""
pulse-llm :: Session Benchmark

Measures the host-side cost of the inference loop, with the scripted
backend standing in for weights:
  - Sampler chain latency per token (top-k -> top-p -> temperature -> dist)
  - Prompt processing tok/s (sub-batched prompt decode)
  - Generation tok/s and latency per reply

Run:
    python -m benchmarks.bench_session
    pulse-llm bench

INL - 2025
"""

import os
import tempfile
import time
import numpy as np
from typing import List

from pulse_llm.backends.scripted import ScriptedBackend
from pulse_llm.core.config import SessionConfig
from pulse_llm.core.sampling import Sampler, SamplingParams
from pulse_llm.engine.session import ModelSession

ARTIFACT = "llama3-health-coach.gguf"


def bench_sampler(
    vocab_sizes: List[int] = [32_000, 128_256],
    n_iters: int = 200,
) -> List[dict]:
    """Sampler chain latency for one token."""
    results = []
    rng = np.random.default_rng(0)
    for vocab_size in vocab_sizes:
        logits = rng.standard_normal(vocab_size).astype(np.float32)
        sampler = Sampler(SamplingParams(seed=0), seed=0)

        for _ in range(5):
            sampler.next_token(logits)

        start = time.perf_counter()
        for _ in range(n_iters):
            sampler.next_token(logits)
        elapsed = time.perf_counter() - start
        sampler.close()

        results.append({
            "vocab_size": vocab_size,
            "us_per_token": round(elapsed / n_iters * 1e6, 1),
        })
    return results


def _session(model_dir: str, n_ctx: int, n_batch: int, max_new_tokens: int) -> ModelSession:
    config = SessionConfig(
        model_dirs=[model_dir],
        backend="scripted",
        n_ctx=n_ctx,
        n_batch=n_batch,
        max_new_tokens=max_new_tokens,
        generation_timeout_s=600.0,
        seed=0,
    )
    session = ModelSession(config, backend=ScriptedBackend(reply=None))
    session.load_if_needed()
    return session


def bench_generate(
    prompt_lengths: List[int] = [64, 512, 1536],
    max_new_tokens: int = 64,
    n_batch: int = 512,
    n_iters: int = 5,
) -> List[dict]:
    """Prompt decode + generation throughput through ModelSession."""
    results = []
    with tempfile.TemporaryDirectory() as model_dir:
        open(os.path.join(model_dir, ARTIFACT), "wb").close()
        with _session(model_dir, 2048, n_batch, max_new_tokens) as session:
            for n_prompt in prompt_lengths:
                # byte-level vocab: one ASCII character is one token
                prompt = "a" * n_prompt

                session.generate(prompt)
                latencies, out_tokens = [], 0
                for _ in range(n_iters):
                    result = session.generate(prompt)
                    latencies.append(result.elapsed_ms)
                    out_tokens += result.output_tokens

                total_s = sum(latencies) / 1000
                results.append({
                    "prompt_tokens": n_prompt,
                    "ms_per_reply": round(sum(latencies) / n_iters, 2),
                    "tokens_per_sec": int(out_tokens / total_s) if total_s > 0 else 0,
                    "prompt_tokens_per_sec": int(n_prompt * n_iters / total_s) if total_s > 0 else 0,
                })
    return results


if __name__ == "__main__":
    print("=" * 60)
    print("pulse-llm :: Session Benchmark")
    print("=" * 60)

    print("\n--- Sampler chain ---")
    for r in bench_sampler():
        print(f"  vocab {r['vocab_size']:>7}: {r['us_per_token']} us/token")

    print("\n--- Generate (scripted backend) ---")
    for r in bench_generate():
        print(
            f"  {r['prompt_tokens']:>5} prompt tokens: {r['ms_per_reply']} ms/reply, "
            f"{r['tokens_per_sec']:,} tok/s"
        )
