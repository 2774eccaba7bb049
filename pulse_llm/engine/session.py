"""
pulse-llm :: Model Session

Owns the model, the decoding context and the sampler, and turns one
prompt into one reply.

States:

    UNLOADED --load--> LOADING --ok--> READY <--> GENERATING
                          |                          |
                          +--fail--> ERROR <--bug----+
    any --unload--> UNLOADED

Resources are acquired model -> context -> sampler and released in the
reverse order, exactly once, whether the load failed halfway, unload()
was called, or the session is being closed.

Generation (one call):
  1. clear the KV memory, reset the sampler
  2. encode the prompt, reject it if it exceeds n_ctx
  3. decode the prompt in n_batch-sized sub-batches (logits on the last)
  4. loop: sample -> accept -> EOG? -> append piece -> decode one token
     until EOG, max_new_tokens, the soft deadline, or cancellation

Only one call may be in flight; a second one gets Busy.

INL - 2025
"""

import itertools
import secrets
import threading
import time
from contextlib import ExitStack
from enum import Enum
from pathlib import Path
from typing import Callable, Optional
from dataclasses import dataclass, field

from pulse_llm.backends import ModelBackend, NativeContext, get_backend
from pulse_llm.core.batch import BatchBuffer
from pulse_llm.core.config import SessionConfig
from pulse_llm.core.errors import (
    Busy, Cancelled, ContextCreateError, ContextOverflow, DecodeStepError,
    EncodingError, GenerationError, InferenceError, LoadError, ModelLoadError,
    ModelNotLoaded,
)
from pulse_llm.core.logging import GenerationLogger, get_logger
from pulse_llm.core.metrics import SessionMetrics
from pulse_llm.core.registry import ModelInfo, locate_artifact, model_info_for
from pulse_llm.core.resources import OwnedResource
from pulse_llm.core.sampling import Sampler
from pulse_llm.core.tokenizer import TokenCodec

logger = get_logger("pulse_llm.session")

ProgressCallback = Callable[[float, str], None]

LOADING_MODEL = "Loading model..."
CREATING_CONTEXT = "Creating context..."
READY_STATUS = "Ready!"


class SessionState(Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    GENERATING = "generating"
    ERROR = "error"


@dataclass
class GenerationResult:
    """One reply plus how it ended."""
    text: str
    finish_reason: str = "stop"     # "stop", "length", "timeout", "error"
    prompt_tokens: int = 0
    output_tokens: int = 0
    elapsed_ms: float = 0.0
    truncated: bool = False
    error: Optional[GenerationError] = field(default=None, repr=False)
    generation_id: int = 0

    @property
    def tokens_per_second(self) -> float:
        if self.elapsed_ms <= 0:
            return 0.0
        return self.output_tokens / (self.elapsed_ms / 1000)

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "finish_reason": self.finish_reason,
            "prompt_tokens": self.prompt_tokens,
            "output_tokens": self.output_tokens,
            "elapsed_ms": round(self.elapsed_ms, 2),
            "truncated": self.truncated,
            "error": self.error.to_dict() if self.error is not None else None,
        }


class _ProgressReporter:
    """Forwards (fraction, status) to the caller, never moving backwards."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self.callback = callback
        self.value = 0.0
        self.status = ""

    def __call__(self, fraction: float, status: str):
        fraction = min(max(fraction, self.value), 1.0)
        if fraction == self.value and status == self.status:
            return
        self.value, self.status = fraction, status
        if self.callback is not None:
            self.callback(fraction, status)


def _close(obj):
    obj.close()


class ModelSession:
    """
    Single-model, single-flight inference session.

    Thread-safe: state transitions happen under one lock, the decode loop
    runs outside it. Blocking; callers that must stay responsive run it
    on a worker thread (see InferenceFacade).
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        backend: Optional[ModelBackend] = None,
        metrics: Optional[SessionMetrics] = None,
    ):
        self.config = config or SessionConfig()
        error = self.config.validate()
        if error:
            raise ValueError(f"Invalid session config: {error}")
        self.backend = backend or get_backend(self.config.backend)
        self.metrics = metrics

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._state = SessionState.UNLOADED

        # Owned while READY / GENERATING
        self._resources: Optional[ExitStack] = None
        self._context: Optional[NativeContext] = None
        self._sampler: Optional[Sampler] = None
        self._codec: Optional[TokenCodec] = None
        self._batch: Optional[BatchBuffer] = None

        self._model_path: Optional[Path] = None
        self._active_cancel: Optional[threading.Event] = None
        self._generation_ids = itertools.count(1)
        self.seed: Optional[int] = None
        self.last_error: Optional[InferenceError] = None
        self.load_count: int = 0

        self.backend.init()

    # =====================================================================
    # State
    # =====================================================================

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_loaded(self) -> bool:
        return self._state in (SessionState.READY, SessionState.GENERATING)

    @property
    def is_generating(self) -> bool:
        return self._state == SessionState.GENERATING

    @property
    def model_path(self) -> Optional[Path]:
        return self._model_path

    @property
    def context_size(self) -> int:
        return self._context.n_ctx if self._context is not None else self.config.n_ctx

    def _set_state(self, state: SessionState):
        # caller holds self._lock
        if state != self._state:
            logger.debug(f"Session state: {self._state.value} -> {state.value}")
        self._state = state
        if self.metrics:
            self.metrics.on_state(state.value)
        self._idle.notify_all()

    def _wait_settled(self):
        # caller holds self._lock
        while self._state in (SessionState.LOADING, SessionState.GENERATING):
            if self._active_cancel is not None:
                self._active_cancel.set()
            self._idle.wait()

    def model_info(self) -> ModelInfo:
        return model_info_for(self._model_path, self.is_loaded)

    # =====================================================================
    # Load / unload
    # =====================================================================

    def load_if_needed(self, progress: Optional[ProgressCallback] = None) -> bool:
        """
        Bring the session to READY. No-op if it already is.

        progress receives (fraction, status) with fraction non-decreasing:
        0.2 "Loading model...", 0.7 "Creating context...", 1.0 "Ready!".

        Returns True if this call performed a load.

        Raises:
            ModelNotFound / ModelLoadError / ContextCreateError (state ERROR)
            Busy: another thread is loading right now
        """
        with self._lock:
            if self.is_loaded:
                return False
            if self._state == SessionState.LOADING:
                raise Busy("model load already in progress")
            self._set_state(SessionState.LOADING)
            self.last_error = None

        report = _ProgressReporter(progress)
        start = time.perf_counter()
        stack = ExitStack()
        try:
            path = locate_artifact(
                self.config.model_dirs, self.config.candidates, self.config.extension,
            )
            report(0.2, LOADING_MODEL)
            logger.info(f"Loading model: {path}")

            def on_weights(fraction: float):
                report(0.2 + 0.5 * fraction, LOADING_MODEL)

            try:
                model = self.backend.load_model(str(path), self.config.n_gpu_layers, on_weights)
            except LoadError:
                raise
            except Exception as exc:
                raise ModelLoadError(f"Failed to load model from {path}: {exc}") from exc
            stack.enter_context(OwnedResource(model, _close, "model"))

            report(0.7, CREATING_CONTEXT)
            try:
                context = self.backend.create_context(
                    model, self.config.n_ctx, self.config.n_batch, self.config.n_threads,
                )
            except LoadError:
                raise
            except Exception as exc:
                raise ContextCreateError(f"Failed to create context: {exc}") from exc
            stack.enter_context(OwnedResource(context, _close, "context"))

            seed = self.config.seed if self.config.seed is not None else secrets.randbits(32)
            sampler = Sampler(self.config.sampling_params(), seed)
            stack.enter_context(OwnedResource(sampler, _close, "sampler"))
        except LoadError as exc:
            stack.close()
            self._fail_load(exc)
            raise
        except BaseException:
            stack.close()
            with self._lock:
                self._set_state(SessionState.UNLOADED)
            raise

        with self._lock:
            self._resources = stack
            self._context = context
            self._sampler = sampler
            self._codec = TokenCodec(model.vocab, render_special=self.config.render_special)
            self._batch = BatchBuffer(context.n_batch)
            self._model_path = path
            self.seed = seed
            self.load_count += 1
            self._set_state(SessionState.READY)

        report(1.0, READY_STATUS)
        if self.metrics:
            self.metrics.on_load_end(start)
        logger.info(
            f"Model ready: {path.name} (n_ctx={context.n_ctx}, n_batch={context.n_batch}, "
            f"seed={seed}, {(time.perf_counter() - start) * 1000:.0f}ms)"
        )
        return True

    def _fail_load(self, exc: LoadError):
        logger.error(f"Model load failed: [{exc.kind}] {exc}")
        with self._lock:
            self.last_error = exc
            self._set_state(SessionState.ERROR)
        if self.metrics:
            self.metrics.on_error(exc.kind)

    def unload(self):
        """
        Release context and model. Safe from any state, idempotent.

        An in-flight generation is cancelled and waited for first.
        """
        with self._lock:
            self._wait_settled()
            stack = self._detach_resources()
            if self._state == SessionState.UNLOADED and stack is None:
                return
            self._set_state(SessionState.UNLOADED)
        if stack is not None:
            stack.close()
            logger.info("Model unloaded")

    def _detach_resources(self) -> Optional[ExitStack]:
        # caller holds self._lock
        stack, self._resources = self._resources, None
        self._context = self._sampler = self._codec = self._batch = None
        return stack

    def close(self):
        """Unload and release the backend runtime."""
        self.unload()
        self.backend.shutdown()

    def __enter__(self) -> "ModelSession":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # =====================================================================
    # Generation
    # =====================================================================

    def generate(
        self,
        prompt: str,
        *,
        cancel_event: Optional[threading.Event] = None,
        max_new_tokens: Optional[int] = None,
        timeout_s: Optional[float] = None,
        on_text: Optional[Callable[[str], None]] = None,
    ) -> GenerationResult:
        """
        Generate one reply for an already-templated prompt.

        Args:
            prompt: full prompt string (see PromptBuilder)
            cancel_event: set() it from any thread to stop at the next token
            max_new_tokens: defaults to config.max_new_tokens
            timeout_s: soft deadline, defaults to config.generation_timeout_s
            on_text: called with each newly completed chunk of text

        Raises:
            ValueError: max_new_tokens below 1
            ModelNotLoaded, Busy: before any work was done
            EncodingError, ContextOverflow, DecodeStepError: prompt stage
            Cancelled: cancel_event was set (partial text is discarded)

        Failures once the prompt is decoded do not raise: the text so far
        is returned with truncated=True and `error` set.
        """
        if max_new_tokens is None:
            max_new_tokens = self.config.max_new_tokens
        if max_new_tokens < 1:
            raise ValueError(f"max_new_tokens must be >= 1, got {max_new_tokens}")
        cancel = cancel_event or threading.Event()
        with self._lock:
            if self._state == SessionState.GENERATING:
                raise Busy("a generation is already in flight")
            if self._state != SessionState.READY:
                raise ModelNotLoaded(f"Model not loaded (state={self._state.value})")
            self._set_state(SessionState.GENERATING)
            self._active_cancel = cancel
            context, sampler, codec, batch = self._context, self._sampler, self._codec, self._batch

        log = GenerationLogger(next(self._generation_ids), logger)
        started = self.metrics.on_generation_start() if self.metrics else 0.0
        try:
            result = self._run(
                prompt, context, sampler, codec, batch, cancel, max_new_tokens,
                timeout_s if timeout_s is not None else self.config.generation_timeout_s,
                log, on_text,
            )
        except Cancelled as exc:
            log.info("Generation cancelled")
            self._end_generation(exc)
            raise
        except GenerationError as exc:
            log.warning(f"Generation failed: [{exc.kind}] {exc}", detail=exc.detail)
            self._end_generation(exc)
            raise
        except Exception as exc:
            # Backend misbehaved: the context can no longer be trusted
            log.error(f"Generation aborted by backend failure: {exc!r}")
            err = DecodeStepError(f"backend failure: {exc}")
            self._end_generation(err, broken=True)
            raise err from exc
        except BaseException:
            self._end_generation(None)
            raise

        if result.error is not None:
            self.last_error = result.error
            if self.metrics:
                self.metrics.on_error(result.error.kind)
        if self.metrics:
            self.metrics.on_generation_end(
                started, result.prompt_tokens, result.output_tokens, result.finish_reason,
            )
        self._end_generation(None)
        return result

    def _end_generation(self, error: Optional[InferenceError], broken: bool = False):
        stack = None
        with self._lock:
            self._active_cancel = None
            if error is not None and not isinstance(error, Cancelled):
                self.last_error = error
            if broken:
                stack = self._detach_resources()
                self._set_state(SessionState.ERROR)
            else:
                self._set_state(SessionState.READY)
        # cancellation is not a failure
        if error is not None and not isinstance(error, Cancelled) and self.metrics:
            self.metrics.on_error(error.kind)
        if stack is not None:
            stack.close()

    def _run(
        self,
        prompt: str,
        context: NativeContext,
        sampler: Sampler,
        codec: TokenCodec,
        batch: BatchBuffer,
        cancel: threading.Event,
        max_new_tokens: int,
        timeout_s: float,
        log: GenerationLogger,
        on_text: Optional[Callable[[str], None]],
    ) -> GenerationResult:
        deadline = time.perf_counter() + timeout_s
        context.clear_memory()
        sampler.reset()

        tokens = codec.encode(prompt, add_special_tokens=self.config.add_special_tokens)
        if not tokens:
            raise EncodingError("prompt encoded to zero tokens")
        n_ctx = context.n_ctx
        n_prompt = len(tokens)
        if n_prompt > n_ctx:
            raise ContextOverflow(
                f"Prompt is {n_prompt} tokens, context holds {n_ctx}",
                detail={"prompt_tokens": n_prompt, "n_ctx": n_ctx},
            )
        log.debug("Prompt encoded", prompt_tokens=n_prompt)

        # Prompt: sub-batches of at most n_batch, logits on the final token only
        for start in range(0, n_prompt, batch.capacity):
            if cancel.is_set():
                raise Cancelled("cancelled during prompt decode")
            chunk = tokens[start:start + batch.capacity]
            batch.clear()
            batch.add_sequence(chunk, start_pos=start, logits_last=start + len(chunk) == n_prompt)
            status = context.decode(batch)
            if status != 0:
                raise DecodeStepError(
                    f"Prompt decode failed at position {start}", status=status,
                    detail={"position": start},
                )

        logits_index = batch.n_tokens - 1
        n_cur = n_prompt
        text = codec.text_stream()
        output_tokens = 0
        finish_reason = "length"
        error: Optional[GenerationError] = None

        while output_tokens < max_new_tokens:
            if cancel.is_set():
                raise Cancelled("cancelled during generation")
            if time.perf_counter() >= deadline:
                finish_reason = "timeout"
                break

            logits = context.logits(logits_index)
            try:
                token = sampler.next_token(logits)
            except (ValueError, RuntimeError) as exc:
                # bad logits (NaN, inf) spoil this reply, not the context
                finish_reason = "error"
                error = DecodeStepError(
                    f"Sampling failed after {output_tokens} tokens: {exc}",
                    detail={"position": n_cur, "output_tokens": output_tokens},
                )
                break
            sampler.accept(token)
            if codec.is_eog(token):
                finish_reason = "stop"
                break

            output_tokens += 1
            chunk_text = text.push(codec.decode_piece(token))
            if chunk_text and on_text is not None:
                on_text(chunk_text)
            if output_tokens >= max_new_tokens:
                break

            if n_cur >= n_ctx:
                finish_reason = "error"
                error = ContextOverflow(
                    f"Context full after {output_tokens} tokens",
                    detail={"n_ctx": n_ctx, "output_tokens": output_tokens},
                )
                break

            batch.clear()
            batch.add(token, n_cur, logits=True)
            status = context.decode(batch)
            if status != 0:
                finish_reason = "error"
                error = DecodeStepError(
                    f"Decode failed at position {n_cur}", status=status,
                    detail={"position": n_cur},
                )
                break
            logits_index = 0
            n_cur += 1

        emitted = len(text.text)
        full = text.finish()
        if on_text is not None and len(full) > emitted:
            on_text(full[emitted:])
        result = GenerationResult(
            text=full.strip(),
            finish_reason=finish_reason,
            prompt_tokens=n_prompt,
            output_tokens=output_tokens,
            elapsed_ms=log.elapsed_ms(),
            truncated=finish_reason != "stop",
            error=error,
        )
        result.generation_id = log.generation_id
        if error is not None:
            log.warning(
                f"Generation truncated: [{error.kind}] {error}",
                prompt_tokens=n_prompt, output_tokens=output_tokens, detail=error.detail,
            )
        else:
            log.info(
                f"Generation finished: {finish_reason}, {output_tokens} tokens "
                f"({result.tokens_per_second:.1f} tok/s)",
                prompt_tokens=n_prompt, output_tokens=output_tokens,
            )
        return result
