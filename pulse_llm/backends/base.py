"""
pulse-llm :: Backend Contracts

What ModelSession needs from a model runtime:

  ModelBackend.load_model()      -> NativeModel    (weights + vocab)
  ModelBackend.create_context()  -> NativeContext  (KV cache + decode)

Backends report failures as ModelLoadError / ContextCreateError and
decode failures as non-zero status codes. Everything else about the
runtime stays behind these classes.

INL - 2025
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional

import numpy as np

from pulse_llm.core.batch import BatchBuffer
from pulse_llm.core.tokenizer import Vocabulary

ProgressFn = Callable[[float], None]


class NativeModel(ABC):
    """Loaded weights. Owned by exactly one ModelSession."""

    path: str

    @property
    @abstractmethod
    def vocab(self) -> Vocabulary:
        ...

    @abstractmethod
    def close(self):
        """Free the weights. Idempotent."""


class NativeContext(ABC):
    """Decoding context: KV cache plus scratch memory for one sequence."""

    n_ctx: int
    n_batch: int

    @abstractmethod
    def decode(self, batch: BatchBuffer) -> int:
        """Run one decode step. 0 on success, backend status code otherwise."""

    @abstractmethod
    def logits(self, batch_index: int) -> np.ndarray:
        """(n_vocab,) float32 logits for a batch entry that requested them."""

    @abstractmethod
    def clear_memory(self):
        """Drop every cached position so the next prompt starts at 0."""

    @abstractmethod
    def close(self):
        """Free the context. Idempotent."""


class ModelBackend(ABC):
    """A model runtime."""

    name: str = "base"

    def init(self):
        """Process-wide runtime setup. Called once per session."""

    def shutdown(self):
        """Process-wide runtime teardown."""

    @abstractmethod
    def load_model(
        self,
        path: str,
        n_gpu_layers: int,
        progress: Optional[ProgressFn] = None,
    ) -> NativeModel:
        """Load weights. progress receives fractions in [0, 1]."""

    @abstractmethod
    def create_context(
        self,
        model: NativeModel,
        n_ctx: int,
        n_batch: int,
        n_threads: int,
    ) -> NativeContext:
        """Allocate a decoding context for `model`."""
