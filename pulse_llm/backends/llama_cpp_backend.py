"""
pulse-llm :: llama.cpp Backend

GGUF models through the llama.cpp C API (llama-cpp-python bindings).

Every native pointer (model, context, batch) is held in an OwnedResource,
so it is freed exactly once, including when construction fails halfway.

Load params:     n_gpu_layers (Metal / CUDA offload), progress callback
Context params:  n_ctx, n_batch, n_threads, n_threads_batch

INL - 2025
"""

import ctypes
import threading
from typing import List, Optional

import numpy as np
import llama_cpp

from pulse_llm.backends.base import ModelBackend, NativeContext, NativeModel, ProgressFn
from pulse_llm.core.batch import BatchBuffer
from pulse_llm.core.errors import ContextCreateError, ModelLoadError
from pulse_llm.core.logging import get_logger
from pulse_llm.core.resources import OwnedResource
from pulse_llm.core.tokenizer import Vocabulary

logger = get_logger("pulse_llm.backends.llama_cpp")

_backend_lock = threading.Lock()
_backend_users = 0


class LlamaVocab(Vocabulary):
    """The vocabulary table embedded in a GGUF file."""

    def __init__(self, vocab_ptr):
        self._vocab = vocab_ptr

    def tokenize(self, text: bytes, add_special: bool) -> List[int]:
        n_max = len(text) + 2
        buf = (llama_cpp.llama_token * n_max)()
        n = llama_cpp.llama_tokenize(self._vocab, text, len(text), buf, n_max, add_special, True)
        if n < 0:
            # buffer too small: -n is the required size
            n_max = -n
            buf = (llama_cpp.llama_token * n_max)()
            n = llama_cpp.llama_tokenize(self._vocab, text, len(text), buf, n_max, add_special, True)
            if n < 0:
                raise RuntimeError(f"llama_tokenize failed: {n}")
        return list(buf[:n])

    def token_to_piece(self, token_id: int, special: bool) -> bytes:
        size = 32
        buf = (ctypes.c_char * size)()
        n = llama_cpp.llama_token_to_piece(self._vocab, token_id, buf, size, 0, special)
        if n < 0:
            size = -n
            buf = (ctypes.c_char * size)()
            n = llama_cpp.llama_token_to_piece(self._vocab, token_id, buf, size, 0, special)
            if n < 0:
                raise RuntimeError(f"llama_token_to_piece failed for token {token_id}")
        return bytes(buf[:n])

    def is_eog(self, token_id: int) -> bool:
        return bool(llama_cpp.llama_vocab_is_eog(self._vocab, token_id))

    @property
    def n_vocab(self) -> int:
        return int(llama_cpp.llama_vocab_n_tokens(self._vocab))


class LlamaModel(NativeModel):
    """llama_model* plus its vocab."""

    def __init__(self, path: str, n_gpu_layers: int, progress: Optional[ProgressFn] = None):
        self.path = path
        params = llama_cpp.llama_model_default_params()
        params.n_gpu_layers = n_gpu_layers

        self._progress_cb = None
        if progress is not None:
            def _on_progress(fraction, _user_data):
                progress(float(fraction))
                return True

            # keep a reference: llama.cpp calls back into it during the load
            self._progress_cb = llama_cpp.llama_progress_callback(_on_progress)
            params.progress_callback = self._progress_cb

        ptr = llama_cpp.llama_model_load_from_file(path.encode("utf-8"), params)
        if ptr is None:
            raise ModelLoadError(f"Failed to load model from {path}", detail={"path": path})
        self._model = OwnedResource(ptr, llama_cpp.llama_model_free, "llama_model")

        vocab_ptr = llama_cpp.llama_model_get_vocab(ptr)
        if vocab_ptr is None:
            self._model.release()
            raise ModelLoadError(f"Model has no vocabulary: {path}", detail={"path": path})
        self._vocab = LlamaVocab(vocab_ptr)

    @property
    def handle(self):
        return self._model.handle

    @property
    def vocab(self) -> Vocabulary:
        return self._vocab

    def close(self):
        self._model.release()


class LlamaContext(NativeContext):
    """llama_context* plus the native batch it decodes from."""

    def __init__(self, model: LlamaModel, n_ctx: int, n_batch: int, n_threads: int):
        params = llama_cpp.llama_context_default_params()
        params.n_ctx = n_ctx
        params.n_batch = n_batch
        params.n_ubatch = min(n_batch, params.n_ubatch)
        params.n_threads = n_threads
        params.n_threads_batch = n_threads

        ptr = llama_cpp.llama_init_from_model(model.handle, params)
        if ptr is None:
            raise ContextCreateError(
                "Failed to create context",
                detail={"n_ctx": n_ctx, "n_batch": n_batch},
            )
        self._ctx = OwnedResource(ptr, llama_cpp.llama_free, "llama_context")
        self._batch = OwnedResource(
            llama_cpp.llama_batch_init(n_batch, 0, 1), llama_cpp.llama_batch_free, "llama_batch",
        )
        self.n_ctx = int(llama_cpp.llama_n_ctx(ptr))
        self.n_batch = n_batch
        self._n_vocab = model.vocab.n_vocab

    def decode(self, batch: BatchBuffer) -> int:
        n = batch.n_tokens
        if n > self.n_batch:
            raise RuntimeError(f"batch of {n} tokens exceeds context batch width {self.n_batch}")
        native = self._batch.handle
        tokens, positions, seq_ids, logits = batch.tokens, batch.positions, batch.seq_ids, batch.logits
        for i in range(n):
            native.token[i] = int(tokens[i])
            native.pos[i] = int(positions[i])
            native.n_seq_id[i] = 1
            native.seq_id[i][0] = int(seq_ids[i])
            native.logits[i] = int(logits[i])
        native.n_tokens = n
        return int(llama_cpp.llama_decode(self._ctx.handle, native))

    def logits(self, batch_index: int) -> np.ndarray:
        ptr = llama_cpp.llama_get_logits_ith(self._ctx.handle, batch_index)
        if not ptr:
            raise RuntimeError(f"no logits for batch index {batch_index}")
        return np.ctypeslib.as_array(ptr, shape=(self._n_vocab,)).copy()

    def clear_memory(self):
        memory = llama_cpp.llama_get_memory(self._ctx.handle)
        llama_cpp.llama_memory_clear(memory, True)

    def close(self):
        # batch first: it was allocated after the context
        self._batch.release()
        self._ctx.release()


class LlamaCppBackend(ModelBackend):
    """llama.cpp runtime. llama_backend_init/free are reference counted."""

    name = "llama_cpp"

    def __init__(self):
        self._initialized = False

    def init(self):
        global _backend_users
        with _backend_lock:
            if self._initialized:
                return
            if _backend_users == 0:
                llama_cpp.llama_backend_init()
                logger.info("llama.cpp backend initialized")
            _backend_users += 1
            self._initialized = True

    def shutdown(self):
        global _backend_users
        with _backend_lock:
            if not self._initialized:
                return
            self._initialized = False
            _backend_users -= 1
            if _backend_users == 0:
                llama_cpp.llama_backend_free()
                logger.info("llama.cpp backend freed")

    def load_model(self, path: str, n_gpu_layers: int, progress: Optional[ProgressFn] = None) -> NativeModel:
        return LlamaModel(path, n_gpu_layers, progress)

    def create_context(self, model: NativeModel, n_ctx: int, n_batch: int, n_threads: int) -> NativeContext:
        if not isinstance(model, LlamaModel):
            raise ContextCreateError(f"expected a LlamaModel, got {type(model).__name__}")
        return LlamaContext(model, n_ctx, n_batch, n_threads)
