"""
pulse-llm :: Prometheus Metrics

Monitoring for the inference session.
Each SessionMetrics owns its CollectorRegistry, so several sessions
(or test cases) never collide on metric names.

Metrics:
  - pulse_llm_generations_total: generation calls, by finish reason
  - pulse_llm_tokens_generated_total: total tokens generated
  - pulse_llm_tokens_prompt_total: total prompt tokens processed
  - pulse_llm_errors_total: failures, by error kind
  - pulse_llm_generation_duration_seconds: generation latency histogram
  - pulse_llm_time_per_token_seconds: decode latency per output token
  - pulse_llm_load_duration_seconds: model load latency histogram
  - pulse_llm_session_state: current session state (enum)

INL - 2025
"""

import time
from typing import Optional

from prometheus_client import (
    CollectorRegistry, Counter, Enum, Gauge, Histogram, Info, start_http_server,
)

SESSION_STATES = ["unloaded", "loading", "ready", "generating", "error"]


class SessionMetrics:
    """Prometheus metrics for one ModelSession."""

    def __init__(
        self,
        port: Optional[int] = None,
        model_name: str = "",
        registry: Optional[CollectorRegistry] = None,
    ):
        self.registry = registry or CollectorRegistry()

        # Info
        self.model_info = Info("pulse_llm_model", "Model information", registry=self.registry)
        self.model_info.info({"name": model_name, "engine": "pulse-llm"})

        # Counters
        self.generations_total = Counter(
            "pulse_llm_generations_total", "Generation calls",
            ["finish_reason"], registry=self.registry,
        )
        self.tokens_generated = Counter(
            "pulse_llm_tokens_generated_total", "Total tokens generated",
            registry=self.registry,
        )
        self.tokens_prompt = Counter(
            "pulse_llm_tokens_prompt_total", "Total prompt tokens processed",
            registry=self.registry,
        )
        self.errors_total = Counter(
            "pulse_llm_errors_total", "Failures by kind",
            ["kind"], registry=self.registry,
        )

        # Histograms
        self.generation_duration = Histogram(
            "pulse_llm_generation_duration_seconds",
            "Generation latency",
            buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry,
        )
        self.time_per_token = Histogram(
            "pulse_llm_time_per_token_seconds",
            "Time per output token",
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25],
            registry=self.registry,
        )
        self.load_duration = Histogram(
            "pulse_llm_load_duration_seconds",
            "Model load latency",
            buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
            registry=self.registry,
        )

        # State
        self.session_state = Enum(
            "pulse_llm_session_state", "Session state",
            states=SESSION_STATES, registry=self.registry,
        )
        self.session_state.state("unloaded")

        self.generating = Gauge(
            "pulse_llm_generating", "1 while a generation is in flight",
            registry=self.registry,
        )

        if port is not None:
            start_http_server(port, registry=self.registry)

    def on_state(self, state: str):
        self.session_state.state(state)

    def on_load_end(self, start_time: float):
        self.load_duration.observe(time.perf_counter() - start_time)

    def on_generation_start(self) -> float:
        self.generating.set(1)
        return time.perf_counter()

    def on_generation_end(
        self,
        start_time: float,
        prompt_tokens: int,
        output_tokens: int,
        finish_reason: str,
    ):
        elapsed = time.perf_counter() - start_time
        self.generating.set(0)
        self.generations_total.labels(finish_reason=finish_reason).inc()
        self.generation_duration.observe(elapsed)
        self.tokens_generated.inc(output_tokens)
        self.tokens_prompt.inc(prompt_tokens)
        if output_tokens > 0:
            self.time_per_token.observe(elapsed / output_tokens)

    def on_error(self, kind: str):
        self.generating.set(0)
        self.errors_total.labels(kind=kind).inc()
