"""
pulse-llm :: Batch Buffer

One decode submission: parallel arrays of
    token id | position | sequence id | emit-logits flag

Allocated once at context creation and reused for every step.
clear() only resets the count; nothing is reallocated.

Logits rule:
  - prompt submission: only the last token of the last sub-batch
  - incremental decode: every (single) token

INL - 2025
"""

import numpy as np
from typing import Sequence


class BatchBuffer:
    """
    Fixed-capacity token batch.

    Capacity comes from the context's batch width, which is fixed at load
    time, so overflowing it is a programming error and raises immediately.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._tokens = np.zeros(capacity, dtype=np.int32)
        self._positions = np.zeros(capacity, dtype=np.int32)
        self._seq_ids = np.zeros(capacity, dtype=np.int32)
        self._logits = np.zeros(capacity, dtype=np.int8)
        self.n_tokens: int = 0

    def clear(self):
        """Reset to empty. O(1)."""
        self.n_tokens = 0

    @property
    def space_left(self) -> int:
        return self.capacity - self.n_tokens

    def add(self, token: int, pos: int, seq_id: int = 0, logits: bool = False):
        """Append one entry."""
        if self.n_tokens >= self.capacity:
            raise RuntimeError(
                f"BatchBuffer full: capacity {self.capacity}, cannot add token at pos {pos}"
            )
        i = self.n_tokens
        self._tokens[i] = token
        self._positions[i] = pos
        self._seq_ids[i] = seq_id
        self._logits[i] = 1 if logits else 0
        self.n_tokens += 1

    def add_sequence(
        self,
        tokens: Sequence[int],
        start_pos: int,
        seq_id: int = 0,
        logits_last: bool = True,
    ):
        """Append consecutive tokens at start_pos, start_pos+1, ..."""
        if len(tokens) > self.space_left:
            raise RuntimeError(
                f"BatchBuffer full: {len(tokens)} tokens do not fit in {self.space_left} free slots"
            )
        last = len(tokens) - 1
        for i, token in enumerate(tokens):
            self.add(token, start_pos + i, seq_id, logits_last and i == last)

    # ---- read-only views (length n_tokens) ----

    @property
    def tokens(self) -> np.ndarray:
        return self._tokens[: self.n_tokens]

    @property
    def positions(self) -> np.ndarray:
        return self._positions[: self.n_tokens]

    @property
    def seq_ids(self) -> np.ndarray:
        return self._seq_ids[: self.n_tokens]

    @property
    def logits(self) -> np.ndarray:
        return self._logits[: self.n_tokens]

    @property
    def last_position(self) -> int:
        """Position of the last entry, -1 if empty."""
        if self.n_tokens == 0:
            return -1
        return int(self._positions[self.n_tokens - 1])

    def logit_indices(self) -> np.ndarray:
        """Batch indices that requested logits."""
        return np.nonzero(self.logits)[0]

    def __len__(self) -> int:
        return self.n_tokens

    def __repr__(self) -> str:
        return f"BatchBuffer(n_tokens={self.n_tokens}, capacity={self.capacity})"
