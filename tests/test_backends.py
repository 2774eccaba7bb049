"""
pulse-llm :: Test Backends

Tests for:
  - get_backend() lookup
  - Scripted backend: load checks, scripted logits, KV bounds, failures
  - llama.cpp backend: runtime refcount and load failure (skipped when
    llama-cpp-python is not installed)

Run:
    python -m pytest tests/test_backends.py -v

INL - 2025
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import numpy as np
import pytest

from pulse_llm.backends import get_backend
from pulse_llm.backends.scripted import KV_FULL_STATUS, ScriptedBackend
from pulse_llm.core.batch import BatchBuffer
from pulse_llm.core.errors import ContextCreateError, ModelLoadError


class TestRegistry:
    def test_scripted_by_name(self):
        assert isinstance(get_backend("scripted", reply="x"), ScriptedBackend)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            get_backend("onnx")


class TestScriptedBackend:
    def test_load_requires_file(self, tmp_path):
        backend = ScriptedBackend()
        with pytest.raises(ModelLoadError):
            backend.load_model(str(tmp_path / "missing.gguf"), 0)

    def test_progress_fractions(self, model_dir):
        backend = ScriptedBackend()
        seen = []
        backend.load_model(str(model_dir / "llama3-health-coach.gguf"), 0, seen.append)
        assert seen == [0.0, 0.5, 1.0]

    def test_context_failure(self, model_dir):
        backend = ScriptedBackend(fail_context=True)
        model = backend.load_model(str(model_dir / "llama3-health-coach.gguf"), 0)
        with pytest.raises(ContextCreateError):
            backend.create_context(model, 64, 16, 1)

    def test_scripted_logits_follow_reply(self, model_dir):
        backend = ScriptedBackend(reply="ok")
        model = backend.load_model(str(model_dir / "llama3-health-coach.gguf"), 0)
        context = backend.create_context(model, 64, 16, 1)
        o, k = model.vocab.tokenize(b"ok", False)

        batch = BatchBuffer(16)
        batch.add_sequence([1, 2, 3], start_pos=0)
        assert context.decode(batch) == 0
        assert int(np.argmax(context.logits(2))) == o

        batch.clear()
        batch.add(o, 3, logits=True)
        assert context.decode(batch) == 0
        assert int(np.argmax(context.logits(0))) == k

        batch.clear()
        batch.add(k, 4, logits=True)
        context.decode(batch)
        assert model.vocab.is_eog(int(np.argmax(context.logits(0))))

    def test_no_logits_for_unflagged_entry(self, model_dir):
        backend = ScriptedBackend()
        model = backend.load_model(str(model_dir / "llama3-health-coach.gguf"), 0)
        context = backend.create_context(model, 64, 16, 1)
        batch = BatchBuffer(16)
        batch.add_sequence([1, 2], start_pos=0)
        context.decode(batch)
        with pytest.raises(RuntimeError):
            context.logits(0)

    def test_position_past_context_is_rejected(self, model_dir):
        backend = ScriptedBackend()
        model = backend.load_model(str(model_dir / "llama3-health-coach.gguf"), 0)
        context = backend.create_context(model, 8, 8, 1)
        batch = BatchBuffer(8)
        batch.add(1, 8, logits=True)
        assert context.decode(batch) == KV_FULL_STATUS


class TestLlamaCppBackend:
    def test_runtime_refcount(self):
        pytest.importorskip("llama_cpp")
        from pulse_llm.backends import llama_cpp_backend as mod

        a, b = mod.LlamaCppBackend(), mod.LlamaCppBackend()
        before = mod._backend_users
        a.init()
        b.init()
        a.init()
        assert mod._backend_users == before + 2
        a.shutdown()
        b.shutdown()
        b.shutdown()
        assert mod._backend_users == before

    def test_load_failure_is_typed(self, tmp_path):
        pytest.importorskip("llama_cpp")
        from pulse_llm.backends.llama_cpp_backend import LlamaCppBackend

        bogus = tmp_path / "llama3-health-coach.gguf"
        bogus.write_bytes(b"not a gguf file")
        backend = LlamaCppBackend()
        backend.init()
        try:
            with pytest.raises(ModelLoadError):
                backend.load_model(str(bogus), 0)
        finally:
            backend.shutdown()
