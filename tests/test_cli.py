"""
pulse-llm :: Test CLI

Smoke tests for list / check / chat against the scripted backend.

Run:
    python -m pytest tests/test_cli.py -v

INL - 2025
"""

import argparse
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from pulse_llm.backends.scripted import DEFAULT_REPLY
from pulse_llm.cli import build_config, main


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in list(os.environ):
        if var.startswith("PULSE_LLM_"):
            monkeypatch.delenv(var)


class TestCommands:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out.lower()

    def test_list(self, capsys):
        assert main(["--log-level", "WARNING", "list"]) == 0
        out = capsys.readouterr().out
        assert "llama3-health-coach.gguf" in out
        assert "Q4_K_M" in out

    def test_check_found(self, model_dir, capsys):
        assert main(["--log-level", "WARNING", "check", "--model-dir", str(model_dir)]) == 0
        out = capsys.readouterr().out
        assert "Selected:" in out
        assert "llama3-health-coach.gguf" in out

    def test_check_missing(self, tmp_path, capsys):
        assert main(["--log-level", "WARNING", "check", "--model-dir", str(tmp_path)]) == 1
        assert "Model file not found" in capsys.readouterr().out

    def test_chat_one_shot(self, model_dir, tmp_path, capsys):
        context = tmp_path / "health.txt"
        context.write_text("Steps: 9120\n")
        code = main([
            "--log-level", "WARNING", "chat",
            "--model-dir", str(model_dir), "--backend", "scripted",
            "--context-file", str(context), "--seed", "1",
            "--message", "How am I doing?",
        ])
        assert code == 0
        assert capsys.readouterr().out.strip() == DEFAULT_REPLY

    def test_chat_without_model(self, tmp_path, capsys):
        code = main([
            "--log-level", "ERROR", "chat",
            "--model-dir", str(tmp_path), "--backend", "scripted", "--message", "hi",
        ])
        assert code == 1
        assert "Model unavailable" in capsys.readouterr().err

    def test_chat_invalid_config(self, model_dir, capsys):
        code = main([
            "--log-level", "ERROR", "chat", "--model-dir", str(model_dir),
            "--backend", "scripted", "--n-ctx", "16", "--message", "hi",
        ])
        assert code == 2
        assert "n_batch" in capsys.readouterr().err


class TestBuildConfig:
    def test_precedence(self, tmp_path, monkeypatch):
        path = tmp_path / "session.json"
        path.write_text(json.dumps({"n_ctx": 1024, "seed": 5, "backend": "scripted"}))
        monkeypatch.setenv("PULSE_LLM_SEED", "6")
        args = argparse.Namespace(
            config=str(path), model_dir=None, backend=None, seed=7,
            n_ctx=None, max_new_tokens=None,
        )
        config = build_config(args)
        assert config.n_ctx == 1024
        assert config.backend == "scripted"
        assert config.seed == 7
