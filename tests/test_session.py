"""
pulse-llm :: Test Model Session

Tests for:
  - Load: idempotence, progress, failure paths, release order
  - Generate: scripted reply, termination, context budget boundary,
    prompt sub-batching, determinism
  - Control: cancellation, soft timeout, busy, unload during generation
  - Partial results when decoding fails mid-reply

Uses the scripted backend (no weights).

Run:
    python -m pytest tests/test_session.py -v

INL - 2025
"""

import os
import sys
import threading
import time

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from pulse_llm.backends.scripted import DEFAULT_REPLY
from pulse_llm.core.chat_template import PromptBuilder
from pulse_llm.core.errors import (
    Busy, Cancelled, ContextCreateError, ContextOverflow, DecodeStepError,
    EncodingError, ModelLoadError, ModelNotFound, ModelNotLoaded,
)
from pulse_llm.core.metrics import SessionMetrics
from pulse_llm.engine.session import ModelSession, SessionState

REPLY_TOKENS = len(DEFAULT_REPLY.encode("utf-8"))


def wait_until(predicate, timeout=5.0):
    deadline = time.perf_counter() + timeout
    while not predicate():
        if time.perf_counter() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.005)


# =========================================================================
# Load
# =========================================================================

class TestLoad:
    def test_initial_state(self, make_session):
        session, backend = make_session()
        assert session.state == SessionState.UNLOADED
        assert not session.is_loaded
        assert backend.initialized

    def test_load_is_idempotent(self, make_session):
        session, backend = make_session()
        assert session.load_if_needed() is True
        assert session.load_if_needed() is False
        assert session.state == SessionState.READY
        assert backend.load_calls == 1
        assert len(backend.contexts) == 1

    def test_progress_is_monotonic(self, make_session):
        session, _ = make_session()
        events = []
        session.load_if_needed(lambda fraction, status: events.append((fraction, status)))
        fractions = [f for f, _ in events]
        assert fractions == sorted(fractions)
        assert events[0] == (0.2, "Loading model...")
        assert (0.7, "Creating context...") in events
        assert events[-1] == (1.0, "Ready!")

    def test_missing_artifact(self, tmp_path):
        from pulse_llm.backends.scripted import ScriptedBackend
        from pulse_llm.core.config import SessionConfig

        config = SessionConfig(model_dirs=[str(tmp_path)], backend="scripted")
        backend = ScriptedBackend()
        with ModelSession(config, backend=backend) as session:
            with pytest.raises(ModelNotFound):
                session.load_if_needed()
            assert session.state == SessionState.ERROR
            assert not session.is_loaded
            assert isinstance(session.last_error, ModelNotFound)
            assert backend.load_calls == 0

            # retry succeeds once the file shows up
            (tmp_path / "llama-3.2-1b-instruct.gguf").write_bytes(b"")
            assert session.load_if_needed() is True
            assert session.model_path.name == "llama-3.2-1b-instruct.gguf"
            assert session.last_error is None

    def test_model_load_failure(self, make_session):
        session, backend = make_session(fail_load=True)
        with pytest.raises(ModelLoadError):
            session.load_if_needed()
        assert session.state == SessionState.ERROR
        assert backend.released == []

    def test_context_failure_releases_model(self, make_session):
        session, backend = make_session(fail_context=True)
        with pytest.raises(ContextCreateError):
            session.load_if_needed()
        assert session.state == SessionState.ERROR
        assert backend.released == ["model"]

    def test_entropy_seed_when_unset(self, make_session):
        session, _ = make_session(config={"seed": None})
        session.load_if_needed()
        assert isinstance(session.seed, int)
        assert 0 <= session.seed < 2 ** 32

    def test_model_info(self, make_session):
        session, _ = make_session()
        assert not session.model_info().is_loaded
        session.load_if_needed()
        info = session.model_info()
        assert info.is_loaded
        assert info.quantization == "Q4_K_M"
        assert info.path.endswith("llama3-health-coach.gguf")


class TestUnload:
    def test_release_order(self, make_session):
        session, backend = make_session()
        session.load_if_needed()
        session.unload()
        assert backend.released == ["context", "model"]
        assert session.state == SessionState.UNLOADED

    def test_unload_is_idempotent(self, make_session):
        session, backend = make_session()
        session.unload()
        session.load_if_needed()
        session.unload()
        session.unload()
        assert backend.released == ["context", "model"]

    def test_reload_after_unload(self, make_session):
        session, backend = make_session()
        session.load_if_needed()
        session.unload()
        assert session.load_if_needed() is True
        assert backend.load_calls == 2
        assert session.generate("hi").text == DEFAULT_REPLY

    def test_generate_after_unload(self, make_session):
        session, _ = make_session()
        session.load_if_needed()
        session.unload()
        with pytest.raises(ModelNotLoaded):
            session.generate("hi")

    def test_close_shuts_backend_down(self, make_session):
        session, backend = make_session()
        with session:
            session.load_if_needed()
        assert not backend.initialized
        assert backend.released == ["context", "model"]


# =========================================================================
# Generate
# =========================================================================

class TestGenerate:
    def test_requires_load(self, make_session):
        session, _ = make_session()
        with pytest.raises(ModelNotLoaded):
            session.generate("hi")

    def test_scripted_reply(self, make_session):
        session, _ = make_session()
        session.load_if_needed()
        prompt = PromptBuilder().build("Be a coach.", "Steps: 9120", "How am I doing?")
        result = session.generate(prompt)
        assert result.text == DEFAULT_REPLY
        assert result.finish_reason == "stop"
        assert not result.truncated
        assert result.error is None
        assert result.output_tokens == REPLY_TOKENS
        assert session.state == SessionState.READY

    def test_repeated_calls_start_fresh(self, make_session):
        session, backend = make_session()
        session.load_if_needed()
        first = session.generate("hello")
        second = session.generate("hello again")
        assert first.text == second.text == DEFAULT_REPLY
        # second call restarted at position 0
        assert min(backend.contexts[0].cache) == 0
        assert max(backend.contexts[0].cache) == len("hello again") + REPLY_TOKENS - 1

    def test_max_new_tokens(self, make_session):
        session, _ = make_session()
        session.load_if_needed()
        result = session.generate("hi", max_new_tokens=5)
        assert result.output_tokens == 5
        assert result.text == DEFAULT_REPLY[:5]
        assert result.finish_reason == "length"
        assert result.truncated

    def test_single_token_budget(self, make_session):
        session, _ = make_session()
        session.load_if_needed()
        result = session.generate("hi", max_new_tokens=1)
        assert result.output_tokens == 1
        assert result.finish_reason == "length"

    @pytest.mark.parametrize("limit", [0, -3])
    def test_max_new_tokens_below_one_is_rejected(self, make_session, limit):
        session, backend = make_session()
        session.load_if_needed()
        with pytest.raises(ValueError):
            session.generate("hi", max_new_tokens=limit)
        assert session.state == SessionState.READY
        assert backend.contexts[0].decode_calls == 0

    def test_prompt_is_sub_batched(self, make_session, monkeypatch):
        session, backend = make_session()
        session.load_if_needed()
        context = backend.contexts[0]
        batches = []
        original = context.decode

        def recording_decode(batch):
            batches.append((batch.n_tokens, [int(i) for i in batch.logit_indices()]))
            return original(batch)

        monkeypatch.setattr(context, "decode", recording_decode)
        result = session.generate("a" * 100)

        # ceil(100 / 32) prompt batches, logits only on the very last prompt token
        assert batches[:4] == [(32, []), (32, []), (32, []), (4, [3])]
        # then one single-token decode per output token
        assert batches[4:] == [(1, [0])] * result.output_tokens
        assert context.decode_calls == 4 + result.output_tokens
        assert sorted(context.cache) == list(range(100 + result.output_tokens))

    def test_on_text_streams_the_reply(self, make_session):
        session, _ = make_session(reply="Bonne nuit 😴")
        session.load_if_needed()
        chunks = []
        result = session.generate("hi", on_text=chunks.append)
        assert "".join(chunks) == "Bonne nuit 😴"
        assert result.text == "Bonne nuit 😴"
        assert all("�" not in c for c in chunks)

    def test_reply_is_trimmed(self, make_session):
        session, _ = make_session(reply="  \n Walk more. \n")
        session.load_if_needed()
        assert session.generate("hi").text == "Walk more."

    @pytest.mark.parametrize("sampling", [
        {"temperature": 0.0},
        {"temperature": 0.7, "top_k": 40, "top_p": 0.9},
        {"temperature": 1.5, "top_k": 0, "top_p": 1.0},
        {"temperature": 0.7, "repetition_penalty": 1.3},
    ])
    def test_terminates_for_any_sampler(self, make_session, sampling):
        config = dict(sampling, max_new_tokens=16)
        session, _ = make_session(config=config, reply=None)
        session.load_if_needed()
        result = session.generate("tell me something")
        assert result.output_tokens <= 16
        assert result.finish_reason in ("stop", "length")

    def test_fixed_seed_is_reproducible(self, make_session):
        config = {"seed": 7, "max_new_tokens": 24, "top_k": 0, "top_p": 1.0, "temperature": 1.0}
        a, _ = make_session(config=config, reply=None)
        b, _ = make_session(config=config, reply=None)
        a.load_if_needed()
        b.load_if_needed()
        first = a.generate("same prompt")
        assert a.generate("same prompt").text == first.text
        assert b.generate("same prompt").text == first.text

    def test_different_seeds_differ(self, make_session):
        base = {"max_new_tokens": 32, "top_k": 0, "top_p": 1.0, "temperature": 1.0}
        a, _ = make_session(config=dict(base, seed=1), reply=None)
        b, _ = make_session(config=dict(base, seed=2), reply=None)
        a.load_if_needed()
        b.load_if_needed()
        ra, rb = a.generate("p"), b.generate("p")
        assert (ra.text, ra.output_tokens) != (rb.text, rb.output_tokens)


class TestContextBudget:
    def test_prompt_equal_to_budget_succeeds(self, make_session):
        session, _ = make_session()
        session.load_if_needed()
        result = session.generate("a" * 256, max_new_tokens=1)
        assert result.prompt_tokens == 256
        assert result.output_tokens == 1
        assert result.error is None

    def test_prompt_over_budget_raises(self, make_session):
        session, backend = make_session()
        session.load_if_needed()
        with pytest.raises(ContextOverflow) as info:
            session.generate("a" * 257)
        assert info.value.detail == {"prompt_tokens": 257, "n_ctx": 256}
        assert backend.contexts[0].decode_calls == 0
        assert session.state == SessionState.READY

    def test_reply_stops_at_budget(self, make_session):
        session, _ = make_session()
        session.load_if_needed()
        result = session.generate("a" * 250)
        # positions 250..255 hold six reply tokens, the seventh has no slot
        assert result.output_tokens == 7
        assert result.text == DEFAULT_REPLY[:7].strip()
        assert result.truncated
        assert result.finish_reason == "error"
        assert isinstance(result.error, ContextOverflow)
        assert session.state == SessionState.READY


class TestGenerationErrors:
    def test_empty_prompt(self, make_session):
        session, _ = make_session()
        session.load_if_needed()
        with pytest.raises(EncodingError):
            session.generate("")
        assert session.state == SessionState.READY

    def test_unencodable_prompt(self, make_session):
        session, _ = make_session()
        session.load_if_needed()
        with pytest.raises(EncodingError):
            session.generate("hi \udcff")
        assert session.generate("hi").text == DEFAULT_REPLY

    def test_prompt_decode_failure(self, make_session):
        session, _ = make_session(fail_decode_at=1)
        session.load_if_needed()
        with pytest.raises(DecodeStepError) as info:
            session.generate("hello")
        assert info.value.status != 0
        assert session.state == SessionState.READY
        assert isinstance(session.last_error, DecodeStepError)

    def test_mid_reply_failure_keeps_partial_text(self, make_session):
        # decode 1 = prompt, 2-3 = first two reply tokens, 4 fails
        session, _ = make_session(fail_decode_at=4)
        session.load_if_needed()
        result = session.generate("hello")
        assert result.text == DEFAULT_REPLY[:3]
        assert result.output_tokens == 3
        assert result.truncated
        assert result.finish_reason == "error"
        assert isinstance(result.error, DecodeStepError)
        assert session.state == SessionState.READY
        assert session.last_error is result.error

    def test_sampling_failure_keeps_context(self, make_session, monkeypatch):
        session, backend = make_session()
        session.load_if_needed()
        sampler = session._sampler
        original = sampler.next_token
        calls = []

        def nan_on_fourth(logits):
            calls.append(1)
            if len(calls) == 4:
                raise RuntimeError("probability tensor contains either `inf`, `nan` or element < 0")
            return original(logits)

        monkeypatch.setattr(sampler, "next_token", nan_on_fourth)
        result = session.generate("hello")
        assert result.text == DEFAULT_REPLY[:3]
        assert result.finish_reason == "error"
        assert isinstance(result.error, DecodeStepError)
        assert session.state == SessionState.READY
        assert backend.released == []

        assert session.generate("hello").text == DEFAULT_REPLY

    def test_backend_crash_moves_to_error(self, make_session, monkeypatch):
        session, backend = make_session()
        session.load_if_needed()

        def boom(batch):
            raise OSError("device lost")

        monkeypatch.setattr(backend.contexts[0], "decode", boom)
        with pytest.raises(DecodeStepError) as info:
            session.generate("hello")
        assert isinstance(info.value.__cause__, OSError)
        assert session.state == SessionState.ERROR
        assert not session.is_loaded
        assert backend.released == ["context", "model"]

        assert session.load_if_needed() is True
        assert session.generate("hello").text == DEFAULT_REPLY


# =========================================================================
# Control: cancel, timeout, busy
# =========================================================================

class TestControl:
    def test_cancel_before_start(self, make_session):
        session, _ = make_session()
        session.load_if_needed()
        event = threading.Event()
        event.set()
        with pytest.raises(Cancelled):
            session.generate("hello", cancel_event=event)
        assert session.state == SessionState.READY

    def test_cancel_mid_reply(self, make_session):
        session, backend = make_session(token_delay_s=0.01)
        session.load_if_needed()
        event = threading.Event()
        timer = threading.Timer(0.08, event.set)
        timer.start()
        try:
            with pytest.raises(Cancelled):
                session.generate("hello", cancel_event=event)
        finally:
            timer.cancel()
        assert session.state == SessionState.READY
        assert session.last_error is None

        backend.token_delay_s = 0.0
        assert session.generate("hello").text == DEFAULT_REPLY

    def test_soft_timeout_returns_partial(self, make_session):
        session, _ = make_session(token_delay_s=0.02)
        session.load_if_needed()
        result = session.generate("hello", timeout_s=0.15)
        assert result.finish_reason == "timeout"
        assert result.truncated
        assert 0 < result.output_tokens < REPLY_TOKENS
        assert DEFAULT_REPLY.startswith(result.text)
        assert session.state == SessionState.READY

    def test_second_caller_is_busy(self, make_session):
        session, _ = make_session(token_delay_s=0.01)
        session.load_if_needed()
        results = []
        worker = threading.Thread(target=lambda: results.append(session.generate("hello")))
        worker.start()
        wait_until(lambda: session.is_generating)
        with pytest.raises(Busy):
            session.generate("me too")
        worker.join()
        assert results[0].text == DEFAULT_REPLY
        assert session.state == SessionState.READY

    def test_unload_cancels_in_flight(self, make_session):
        session, backend = make_session(token_delay_s=0.01)
        session.load_if_needed()
        errors = []

        def run():
            try:
                session.generate("hello")
            except Cancelled as exc:
                errors.append(exc)

        worker = threading.Thread(target=run)
        worker.start()
        wait_until(lambda: session.is_generating)
        session.unload()
        worker.join()
        assert len(errors) == 1
        assert session.state == SessionState.UNLOADED
        assert backend.released == ["context", "model"]


class TestSessionMetrics:
    def test_counts_generations_and_errors(self, make_session):
        session, _ = make_session(fail_decode_at=4)
        metrics = SessionMetrics()
        session.metrics = metrics
        session.load_if_needed()
        session.generate("hello")
        registry = metrics.registry
        assert registry.get_sample_value(
            "pulse_llm_generations_total", {"finish_reason": "error"}) == 1.0
        assert registry.get_sample_value(
            "pulse_llm_errors_total", {"kind": "DecodeStepError"}) == 1.0
        assert registry.get_sample_value("pulse_llm_tokens_generated_total") == 3.0
        assert registry.get_sample_value(
            "pulse_llm_session_state", {"pulse_llm_session_state": "ready"}) == 1.0

    def test_cancellation_is_not_an_error(self, make_session):
        session, _ = make_session()
        metrics = SessionMetrics()
        session.metrics = metrics
        session.load_if_needed()
        event = threading.Event()
        event.set()
        with pytest.raises(Cancelled):
            session.generate("hello", cancel_event=event)
        assert metrics.registry.get_sample_value(
            "pulse_llm_errors_total", {"kind": "Cancelled"}) is None
        assert session.last_error is None
