"""
pulse-llm :: Test fixtures

A model directory holding an empty .gguf file plus helpers that build a
ModelSession on the scripted backend (no weights needed).

INL - 2025
"""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from pulse_llm.backends.scripted import ScriptedBackend
from pulse_llm.core.config import SessionConfig
from pulse_llm.engine.session import ModelSession

ARTIFACT = "llama3-health-coach.gguf"


@pytest.fixture
def model_dir(tmp_path):
    (tmp_path / ARTIFACT).write_bytes(b"GGUF")
    return tmp_path


@pytest.fixture
def make_session(model_dir):
    """make_session(backend_kwargs..., config=dict) -> (session, backend)."""
    sessions = []

    def _make(config=None, **backend_kwargs):
        cfg = SessionConfig(
            model_dirs=[str(model_dir)],
            backend="scripted",
            n_ctx=256,
            n_batch=32,
            seed=1234,
        )
        for key, val in (config or {}).items():
            setattr(cfg, key, val)
        backend = ScriptedBackend(**backend_kwargs)
        session = ModelSession(cfg, backend=backend)
        sessions.append(session)
        return session, backend

    yield _make
    for session in sessions:
        session.close()
