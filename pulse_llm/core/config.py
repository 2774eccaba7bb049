"""
pulse-llm :: Session Config

Everything the session needs to go from a model directory to a reply.
Load from a JSON file, from PULSE_LLM_* environment variables, or build
directly. Unknown JSON keys are ignored.

INL - 2025
"""

import json
import os
from typing import List, Optional, Tuple
from dataclasses import dataclass, field

from pulse_llm.core.sampling import SamplingParams
from pulse_llm.core.registry import DEFAULT_CANDIDATES, MODEL_EXTENSION


@dataclass
class SessionConfig:
    """
    Inference session config.
    Defaults mirror the on-device build: Llama 3.2 1B Q4_K_M, Metal offload.
    """
    # Artifact
    model_dirs: List[str] = field(default_factory=lambda: ["models"])
    candidates: Tuple[str, ...] = DEFAULT_CANDIDATES
    extension: str = MODEL_EXTENSION
    backend: str = "llama_cpp"

    # Context
    n_ctx: int = 2048             # token budget: prompt + reply
    n_batch: int = 512            # max tokens per decode call
    n_threads: int = 4
    n_gpu_layers: int = 99        # offload everything that fits

    # Generation
    max_new_tokens: int = 256
    generation_timeout_s: float = 10.0
    add_special_tokens: bool = False   # the chat template already carries BOS
    render_special: bool = False

    # Sampling (top-k -> top-p -> temperature -> dist)
    top_k: int = 40
    top_p: float = 0.9
    temperature: float = 0.7
    seed: Optional[int] = None    # None: fresh entropy on every load
    repetition_penalty: float = 1.0
    penalty_last_n: int = 64

    # Concurrency
    reject_when_busy: bool = False

    def sampling_params(self) -> SamplingParams:
        return SamplingParams(
            top_k=self.top_k,
            top_p=self.top_p,
            temperature=self.temperature,
            seed=self.seed,
            repetition_penalty=self.repetition_penalty,
            penalty_last_n=self.penalty_last_n,
        )

    def validate(self) -> Optional[str]:
        """Returns error message or None."""
        if self.n_ctx < 1:
            return "n_ctx must be >= 1"
        if self.n_batch < 1:
            return "n_batch must be >= 1"
        if self.n_batch > self.n_ctx:
            return "n_batch must be <= n_ctx"
        if self.n_threads < 1:
            return "n_threads must be >= 1"
        if self.n_gpu_layers < 0:
            return "n_gpu_layers must be >= 0"
        if self.max_new_tokens < 1:
            return "max_new_tokens must be >= 1"
        if self.generation_timeout_s <= 0:
            return "generation_timeout_s must be > 0"
        if not self.candidates:
            return "candidates must not be empty"
        return self.sampling_params().validate()

    @staticmethod
    def from_dict(data: dict) -> "SessionConfig":
        config = SessionConfig()
        for key, val in data.items():
            if not hasattr(config, key):
                continue
            if key == "candidates":
                val = tuple(val)
            elif key == "model_dirs" and isinstance(val, str):
                val = [val]
            setattr(config, key, val)
        return config

    @staticmethod
    def from_json(path: str) -> "SessionConfig":
        """Load from a JSON config file."""
        with open(path, "r") as f:
            return SessionConfig.from_dict(json.load(f))

    @staticmethod
    def from_env(base: Optional["SessionConfig"] = None, environ=None) -> "SessionConfig":
        """
        Overlay PULSE_LLM_* environment variables on `base`.

        PULSE_LLM_MODEL_DIR accepts several directories separated by os.pathsep.
        """
        env = os.environ if environ is None else environ
        config = base or SessionConfig()

        if env.get("PULSE_LLM_MODEL_DIR"):
            config.model_dirs = env["PULSE_LLM_MODEL_DIR"].split(os.pathsep)
        if env.get("PULSE_LLM_BACKEND"):
            config.backend = env["PULSE_LLM_BACKEND"]

        int_vars = {
            "PULSE_LLM_N_CTX": "n_ctx",
            "PULSE_LLM_N_BATCH": "n_batch",
            "PULSE_LLM_N_THREADS": "n_threads",
            "PULSE_LLM_N_GPU_LAYERS": "n_gpu_layers",
            "PULSE_LLM_MAX_NEW_TOKENS": "max_new_tokens",
            "PULSE_LLM_SEED": "seed",
        }
        for var, attr in int_vars.items():
            if env.get(var):
                setattr(config, attr, int(env[var]))
        if env.get("PULSE_LLM_TIMEOUT_S"):
            config.generation_timeout_s = float(env["PULSE_LLM_TIMEOUT_S"])
        return config
