"""
pulse-llm :: Scripted Backend

A weight-free backend for tests, benchmarks and `pulse-llm chat --backend
scripted`. The "model file" only has to exist; its contents are ignored.

Vocabulary:
  byte-level BPE built in memory with `tokenizers`: 256 byte symbols
  plus the Llama 3 control tokens, BOS added by the post-processor.

Logits:
  - scripted mode: a sharp peak on the next token of `reply`, so any
    sampler configuration reproduces the reply and then <|eot_id|>.
    The script only advances when the caller feeds back the token it
    predicted; any other batch (a new prompt) restarts it.
  - babble mode (reply=None): seeded random logits, like running the
    engine with no weights loaded. The RNG restarts with the KV memory,
    so the same prompt always sees the same logits.

Failure knobs (fail_load, fail_context, fail_decode_at) drive the error
paths of ModelSession without a real runtime.

INL - 2025
"""

import os
import time
from typing import Dict, List, Optional

import numpy as np

from pulse_llm.backends.base import ModelBackend, NativeContext, NativeModel, ProgressFn
from pulse_llm.core.batch import BatchBuffer
from pulse_llm.core.errors import ContextCreateError, ModelLoadError
from pulse_llm.core.logging import get_logger
from pulse_llm.core.tokenizer import ByteLevelVocab, Vocabulary, bytes_to_unicode
from pulse_llm.core.chat_template import ROLE_MARKERS

logger = get_logger("pulse_llm.backends.scripted")

DEFAULT_REPLY = "Great job on your steps today! Try a short walk after dinner."

# llama_decode's "could not find a KV slot" status
KV_FULL_STATUS = 1
DECODE_FAILED_STATUS = -1


def build_byte_tokenizer():
    """In-memory byte-level BPE with the Llama 3 control tokens."""
    from tokenizers import Tokenizer, decoders, models, pre_tokenizers, processors

    byte_symbols = bytes_to_unicode()
    vocab = {byte_symbols[b]: b for b in range(256)}

    tokenizer = Tokenizer(models.BPE(vocab=vocab, merges=[]))
    tokenizer.pre_tokenizer = pre_tokenizers.ByteLevel(add_prefix_space=False)
    tokenizer.decoder = decoders.ByteLevel()
    tokenizer.add_special_tokens(list(ROLE_MARKERS))

    bos = "<|begin_of_text|>"
    tokenizer.post_processor = processors.TemplateProcessing(
        single=f"{bos} $A",
        special_tokens=[(bos, tokenizer.token_to_id(bos))],
    )
    return tokenizer


def scripted_vocab() -> ByteLevelVocab:
    return ByteLevelVocab(build_byte_tokenizer())


class ScriptedModel(NativeModel):

    def __init__(self, path: str, vocab: Vocabulary, released: List[str]):
        self.path = path
        self._vocab = vocab
        self._released = released
        self.closed = False

    @property
    def vocab(self) -> Vocabulary:
        return self._vocab

    def close(self):
        if not self.closed:
            self.closed = True
            self._released.append("model")


class ScriptedContext(NativeContext):
    """Fake KV cache (position -> token) plus scripted logits."""

    def __init__(self, backend: "ScriptedBackend", vocab: Vocabulary, n_ctx: int, n_batch: int):
        self.backend = backend
        self.vocab = vocab
        self.n_ctx = n_ctx
        self.n_batch = n_batch
        self.closed = False
        self.decode_calls = 0
        self.cache: Dict[int, int] = {}

        self._rng = np.random.default_rng(backend.babble_seed)
        self._script: List[int] = []
        if backend.reply is not None:
            self._script = vocab.tokenize(backend.reply.encode("utf-8"), False)
        eot = getattr(vocab, "token_id", lambda _: None)("<|eot_id|>")
        self._eot = eot if eot is not None else 0
        self._cursor = 0
        self._expected: Optional[int] = None
        self._logits: Dict[int, np.ndarray] = {}

    def _next_target(self) -> int:
        if self._cursor < len(self._script):
            return self._script[self._cursor]
        return self._eot

    def decode(self, batch: BatchBuffer) -> int:
        if self.closed:
            raise RuntimeError("decode on a closed context")
        self.decode_calls += 1
        fail_at = self.backend.fail_decode_at
        if fail_at is not None and self.decode_calls >= fail_at:
            return DECODE_FAILED_STATUS
        if self.backend.token_delay_s:
            time.sleep(self.backend.token_delay_s)

        n = batch.n_tokens
        if n == 0 or n > self.n_batch:
            return DECODE_FAILED_STATUS
        tokens, positions = batch.tokens, batch.positions
        for i in range(n):
            pos = int(positions[i])
            if pos >= self.n_ctx:
                return KV_FULL_STATUS
            self.cache[pos] = int(tokens[i])

        if n == 1 and self._expected is not None and int(tokens[0]) == self._expected:
            self._cursor += 1
        else:
            self._cursor = 0

        self._logits = {}
        target = self._next_target()
        self._expected = target
        for i in batch.logit_indices():
            if self.backend.reply is None:
                row = self._rng.standard_normal(self.vocab.n_vocab).astype(np.float32)
            else:
                row = np.zeros(self.vocab.n_vocab, dtype=np.float32)
                row[target] = self.backend.logit_peak
            self._logits[int(i)] = row
        return 0

    def logits(self, batch_index: int) -> np.ndarray:
        if batch_index not in self._logits:
            raise RuntimeError(f"no logits for batch index {batch_index}")
        return self._logits[batch_index].copy()

    def clear_memory(self):
        self.cache.clear()
        self._rng = np.random.default_rng(self.backend.babble_seed)
        self._cursor = 0
        self._expected = None
        self._logits = {}

    def close(self):
        if not self.closed:
            self.closed = True
            self.backend.released.append("context")


class ScriptedBackend(ModelBackend):
    """
    Deterministic stand-in for a real runtime.

    Args:
        reply: text the "model" answers with; None for random logits
        token_delay_s: sleep per decode call (exercises timeouts / cancel)
        load_delay_s: sleep while "reading weights"
        fail_load / fail_context: make the matching step fail
        fail_decode_at: the N-th decode call (1-based) and every later one
            returns a non-zero status
    """

    name = "scripted"

    def __init__(
        self,
        reply: Optional[str] = DEFAULT_REPLY,
        token_delay_s: float = 0.0,
        load_delay_s: float = 0.0,
        fail_load: bool = False,
        fail_context: bool = False,
        fail_decode_at: Optional[int] = None,
        logit_peak: float = 30.0,
        babble_seed: int = 0,
    ):
        self.reply = reply
        self.token_delay_s = token_delay_s
        self.load_delay_s = load_delay_s
        self.fail_load = fail_load
        self.fail_context = fail_context
        self.fail_decode_at = fail_decode_at
        self.logit_peak = logit_peak
        self.babble_seed = babble_seed

        self.vocab = scripted_vocab()
        self.initialized = False
        self.load_calls = 0
        self.models: List[ScriptedModel] = []
        self.contexts: List[ScriptedContext] = []
        self.released: List[str] = []

    def init(self):
        self.initialized = True

    def shutdown(self):
        self.initialized = False

    def load_model(self, path: str, n_gpu_layers: int, progress: Optional[ProgressFn] = None) -> NativeModel:
        self.load_calls += 1
        if not os.path.isfile(path):
            raise ModelLoadError(f"Failed to load model from {path}", detail={"path": path})
        for fraction in (0.0, 0.5, 1.0):
            if progress is not None:
                progress(fraction)
            if self.load_delay_s and fraction < 1.0:
                time.sleep(self.load_delay_s / 2)
        if self.fail_load:
            raise ModelLoadError(f"Failed to load model from {path}", detail={"path": path})
        model = ScriptedModel(path, self.vocab, self.released)
        self.models.append(model)
        logger.debug(f"Scripted model loaded: {path}")
        return model

    def create_context(self, model: NativeModel, n_ctx: int, n_batch: int, n_threads: int) -> NativeContext:
        if self.fail_context:
            raise ContextCreateError("Failed to create context", detail={"n_ctx": n_ctx})
        context = ScriptedContext(self, model.vocab, n_ctx, n_batch)
        self.contexts.append(context)
        return context
