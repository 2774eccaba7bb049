"""
pulse-llm :: Sampling

Chained token selection for one position:

  0. repetition penalty   (optional, off by default)
  1. top-k                keep the K highest logits
  2. top-p                keep the smallest nucleus with cumulative prob >= P
  3. temperature          divide the survivors by T
  4. dist                 seeded categorical draw

Stage order is fixed. Output is always an int token id.

INL - 2025
"""

import torch
import numpy as np
from collections import deque
from typing import Deque, Optional, Union
from dataclasses import dataclass


@dataclass
class SamplingParams:
    """Sampling parameters."""
    top_k: int = 40
    top_p: float = 0.9
    temperature: float = 0.7
    seed: Optional[int] = None     # None: caller draws one from entropy
    min_keep: int = 1

    # Repetition penalty over the last `penalty_last_n` accepted tokens
    repetition_penalty: float = 1.0
    penalty_last_n: int = 64

    def validate(self) -> Optional[str]:
        """Returns error message or None."""
        if self.top_k < 0:
            return "top_k must be >= 0"
        if self.top_p <= 0 or self.top_p > 1:
            return "top_p must be in (0, 1]"
        if self.temperature < 0:
            return "temperature must be >= 0"
        if self.min_keep < 1:
            return "min_keep must be >= 1"
        if self.repetition_penalty <= 0:
            return "repetition_penalty must be > 0"
        if self.penalty_last_n < 0:
            return "penalty_last_n must be >= 0"
        if self.seed is not None and self.seed < 0:
            return "seed must be >= 0"
        return None


class Sampler:
    """
    Stateful sampler chain for one session.

    State that survives between tokens: the RNG and the window of accepted
    tokens. reset() restores both to their initial value, so a fixed seed
    gives the same reply for the same prompt on every call.
    """

    def __init__(self, params: SamplingParams, seed: int):
        error = params.validate()
        if error:
            raise ValueError(error)
        self.params = params
        self.seed = seed
        self._generator = torch.Generator(device="cpu")
        self._generator.manual_seed(seed)
        self._recent: Deque[int] = deque(maxlen=params.penalty_last_n)
        self._closed = False

    def next_token(self, logits: Union[np.ndarray, torch.Tensor]) -> int:
        """
        Pick the next token from the logits of the last position.

        Args:
            logits: (vocab_size,) float array

        Returns:
            token_id: int
        """
        if self._closed:
            raise RuntimeError("sampler is closed")

        logits = self._as_tensor(logits)

        if self.params.repetition_penalty != 1.0 and self._recent:
            logits = self._apply_repetition_penalty(logits)

        values, ids = self._top_k(logits)
        values, ids = self._top_p(values, ids)

        # Greedy
        if self.params.temperature == 0.0:
            return int(ids[0].item())

        values = values / self.params.temperature
        probs = torch.softmax(values, dim=-1)
        choice = torch.multinomial(probs, num_samples=1, generator=self._generator).item()
        return int(ids[choice].item())

    def accept(self, token_id: int):
        """Record a token that was actually emitted."""
        if self.params.penalty_last_n > 0:
            self._recent.append(token_id)

    def reset(self):
        """Clear the repetition window and rewind the RNG to the seed."""
        self._recent.clear()
        self._generator.manual_seed(self.seed)

    def close(self):
        self._recent.clear()
        self._closed = True

    # ---- stages ----

    @staticmethod
    def _as_tensor(logits) -> torch.Tensor:
        if isinstance(logits, torch.Tensor):
            t = logits.detach().to("cpu", torch.float32).clone()
        else:
            t = torch.from_numpy(np.array(logits, dtype=np.float32, copy=True))
        if t.dim() != 1:
            t = t.reshape(-1)
        if t.numel() == 0:
            raise ValueError("empty logits")
        return t

    def _apply_repetition_penalty(self, logits: torch.Tensor) -> torch.Tensor:
        token_set = torch.tensor(sorted(set(self._recent)), dtype=torch.long)
        token_set = token_set[token_set < logits.shape[0]]
        penalty_logits = logits[token_set]
        # Penalize: reduce positive, amplify negative
        penalty_logits = torch.where(
            penalty_logits > 0,
            penalty_logits / self.params.repetition_penalty,
            penalty_logits * self.params.repetition_penalty,
        )
        logits[token_set] = penalty_logits
        return logits

    def _top_k(self, logits: torch.Tensor):
        """Candidates sorted by descending logit."""
        k = self.params.top_k
        n = logits.shape[0]
        if 0 < k < n:
            return logits.topk(max(k, self.params.min_keep))
        return logits.sort(descending=True)

    def _top_p(self, values: torch.Tensor, ids: torch.Tensor):
        if self.params.top_p >= 1.0:
            return values, ids
        probs = torch.softmax(values, dim=-1)
        cumulative = probs.cumsum(dim=-1)
        # smallest prefix whose mass reaches top_p
        n_keep = int((cumulative < self.params.top_p).sum().item()) + 1
        n_keep = min(max(n_keep, self.params.min_keep), values.shape[0])
        return values[:n_keep], ids[:n_keep]
