"""
pulse-llm :: Inference Facade

Async, UI-facing front of ModelSession.

  - one dedicated worker thread runs every load / generate call, so the
    event loop (the UI) never blocks on native work
  - calls are single-flight: later ones queue in FIFO order, or get Busy
    when config.reject_when_busy is set
  - observable status (is_model_loaded, is_generating, loading_progress,
    loading_status, last_error) is only ever mutated on the event loop;
    the worker posts updates with call_soon_threadsafe
  - every internal failure ends as a user-facing string: generate()
    never raises for model problems

INL - 2025
"""

import asyncio
import functools
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional
from dataclasses import dataclass, replace

from pulse_llm.core.chat_template import (
    DEFAULT_SYSTEM_INSTRUCTION, PromptBuilder, strip_role_markers,
)
from pulse_llm.core.errors import (
    Busy, Cancelled, GenerationError, InferenceError, LoadError,
)
from pulse_llm.core.logging import get_logger
from pulse_llm.core.registry import ModelInfo
from pulse_llm.engine.session import GenerationResult, ModelSession

logger = get_logger("pulse_llm.facade")

UNAVAILABLE_MESSAGE = "AI is unavailable right now. Please try again."
RETRY_MESSAGE = "I couldn't finish that reply. Please try again."
TIMEOUT_MESSAGE = "Reply took too long and was cut short."
TIMEOUT_KIND = "Timeout"


@dataclass(frozen=True)
class InferenceStatus:
    """Snapshot of everything the UI observes."""
    is_model_loaded: bool = False
    is_generating: bool = False
    loading_progress: float = 0.0
    loading_status: str = ""
    last_error: Optional[str] = None
    last_error_kind: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "is_model_loaded": self.is_model_loaded,
            "is_generating": self.is_generating,
            "loading_progress": round(self.loading_progress, 3),
            "loading_status": self.loading_status,
            "last_error": self.last_error,
            "last_error_kind": self.last_error_kind,
        }


StatusObserver = Callable[[InferenceStatus], None]


class InferenceFacade:
    """
    Loads lazily, generates one reply at a time, publishes status.

    Usage:
        facade = InferenceFacade(ModelSession(config))
        await facade.load_if_needed()
        reply = await facade.generate("How did I sleep?", health_context)
        await facade.aclose()
    """

    def __init__(
        self,
        session: ModelSession,
        system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION,
        prompt_builder: Optional[PromptBuilder] = None,
    ):
        self.session = session
        self.config = session.config
        self.system_instruction = system_instruction
        self.prompt_builder = prompt_builder or PromptBuilder()

        # Every native call happens on this one thread
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pulse-llm")
        self._load_lock = asyncio.Lock()
        self._generate_lock = asyncio.Lock()
        self._cancel_event: Optional[threading.Event] = None
        self._closed = False

        self._status = InferenceStatus(is_model_loaded=session.is_loaded)
        self._observers: List[StatusObserver] = []
        self.last_result: Optional[GenerationResult] = None

    # =====================================================================
    # Observable status
    # =====================================================================

    @property
    def is_model_loaded(self) -> bool:
        return self._status.is_model_loaded

    @property
    def is_generating(self) -> bool:
        return self._status.is_generating

    @property
    def loading_progress(self) -> float:
        return self._status.loading_progress

    @property
    def loading_status(self) -> str:
        return self._status.loading_status

    @property
    def last_error(self) -> Optional[str]:
        return self._status.last_error

    @property
    def last_error_kind(self) -> Optional[str]:
        return self._status.last_error_kind

    def status(self) -> InferenceStatus:
        return self._status

    def subscribe(self, observer: StatusObserver) -> Callable[[], None]:
        """Call observer with every new status. Returns an unsubscribe function."""
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _publish(self, **changes):
        status = replace(self._status, **changes)
        if status == self._status:
            return
        self._status = status
        for observer in list(self._observers):
            try:
                observer(status)
            except Exception:
                logger.exception("Status observer failed")

    def _on_progress(self, fraction: float, status: str):
        if fraction < self._status.loading_progress:
            return
        self._publish(loading_progress=fraction, loading_status=status)

    def _publish_error(self, exc: InferenceError):
        self._publish(last_error=str(exc), last_error_kind=exc.kind)

    def model_info(self) -> ModelInfo:
        return self.session.model_info()

    # =====================================================================
    # Load
    # =====================================================================

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))

    async def load_if_needed(self):
        """
        Load the model if it is not loaded yet.

        Never raises for load failures: they land in last_error and the
        model stays unloaded. Not retried automatically; call again.
        """
        if self._closed:
            raise RuntimeError("InferenceFacade is closed")
        async with self._load_lock:
            if self.session.is_loaded:
                self._publish(is_model_loaded=True)
                return

            loop = asyncio.get_running_loop()
            self._publish(
                loading_progress=0.0, loading_status="",
                last_error=None, last_error_kind=None,
            )

            def progress(fraction: float, status: str):
                loop.call_soon_threadsafe(self._on_progress, fraction, status)

            try:
                await self._run(self.session.load_if_needed, progress)
            except LoadError as exc:
                logger.error(f"Model unavailable: [{exc.kind}] {exc}")
                self._publish(
                    is_model_loaded=False, loading_progress=0.0, loading_status="",
                    last_error=str(exc), last_error_kind=exc.kind,
                )
                return
            except Busy as exc:
                self._publish_error(exc)
                return

            self._publish(is_model_loaded=True, loading_progress=1.0, loading_status="Ready!")

    # =====================================================================
    # Generate
    # =====================================================================

    async def generate(self, user_text: str, health_context: str = "") -> str:
        """
        One user-visible reply.

        Loads the model on first use. Concurrent calls queue FIFO behind
        the one in flight (or raise Busy with reject_when_busy).

        Returns the reply text, UNAVAILABLE_MESSAGE when the model cannot
        be used, RETRY_MESSAGE when this one reply failed or came back
        empty, or "" when the call was cancelled.
        """
        if self.config.reject_when_busy and self._generate_lock.locked():
            raise Busy("a reply is already being generated")

        async with self._generate_lock:
            # Created before the lazy load so cancel() covers the whole call
            cancel = threading.Event()
            self._cancel_event = cancel
            self._publish(is_generating=True)
            try:
                return await self._generate_locked(user_text, health_context, cancel)
            finally:
                self._cancel_event = None
                self._publish(is_generating=False)

    async def _generate_locked(self, user_text: str, health_context: str, cancel: threading.Event) -> str:
        if not self.session.is_loaded:
            await self.load_if_needed()
            if cancel.is_set():
                logger.info("Reply cancelled while loading")
                return ""
            if not self.session.is_loaded:
                return UNAVAILABLE_MESSAGE

        prompt = self.prompt_builder.build(self.system_instruction, health_context, user_text)

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            self._executor, functools.partial(self.session.generate, prompt, cancel_event=cancel),
        )
        try:
            result = await asyncio.shield(future)
        except asyncio.CancelledError:
            # Caller went away: stop the worker and wait for it before unwinding
            cancel.set()
            await asyncio.wait([future])
            if not future.cancelled():
                future.exception()
            raise
        except Cancelled:
            logger.info("Reply cancelled")
            return ""
        except GenerationError as exc:
            self._publish_error(exc)
            if not self.session.is_loaded:
                self._publish(is_model_loaded=False)
                return UNAVAILABLE_MESSAGE
            return RETRY_MESSAGE
        except InferenceError as exc:
            # ModelNotLoaded / Busy: the session was unloaded or used behind our back
            logger.warning(f"Generation refused: [{exc.kind}] {exc}")
            self._publish_error(exc)
            self._publish(is_model_loaded=self.session.is_loaded)
            return UNAVAILABLE_MESSAGE

        self.last_result = result
        if result.error is not None:
            self._publish_error(result.error)
        elif result.finish_reason == "timeout":
            logger.warning(
                f"Reply timed out after {result.output_tokens} tokens "
                f"({result.elapsed_ms:.0f} ms)"
            )
            self._publish(last_error=TIMEOUT_MESSAGE, last_error_kind=TIMEOUT_KIND)
        else:
            self._publish(last_error=None, last_error_kind=None)

        # "" is reserved for cancellation
        text = strip_role_markers(result.text).strip()
        if not text:
            logger.warning(f"Empty reply (finish_reason={result.finish_reason})")
            return RETRY_MESSAGE
        return text

    def cancel(self) -> bool:
        """Stop the reply in flight at the next token. False if none is."""
        event = self._cancel_event
        if event is None:
            return False
        event.set()
        return True

    # =====================================================================
    # Teardown
    # =====================================================================

    async def unload(self):
        """Free the model. An in-flight reply is cancelled first."""
        self.cancel()
        await self._run(self.session.unload)
        self._publish(is_model_loaded=False, loading_progress=0.0, loading_status="")

    async def aclose(self):
        """Unload, release the backend runtime and stop the worker thread."""
        if self._closed:
            return
        self.cancel()
        await self._run(self.session.close)
        self._closed = True
        self._executor.shutdown(wait=True)
        self._publish(is_model_loaded=False, loading_progress=0.0, loading_status="")

    async def __aenter__(self) -> "InferenceFacade":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
