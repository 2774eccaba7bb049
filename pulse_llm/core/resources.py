"""
pulse-llm :: Owned Resources

Scoped ownership for native handles (model, context, batch, sampler).

Each handle is paired with the function that frees it. The guard calls
that function exactly once: on release(), on leaving a `with` block, or,
as a last resort, when the guard is garbage collected.

    with OwnedResource(ptr, llama_cpp.llama_free, "context") as ctx:
        ...

INL - 2025
"""

import threading
from typing import Callable, Generic, Optional, TypeVar

from pulse_llm.core.logging import get_logger

logger = get_logger("pulse_llm.resources")

T = TypeVar("T")


class OwnedResource(Generic[T]):
    """
    A handle plus its free function.

    `handle` raises once the resource has been released, so use-after-free
    surfaces as a Python error instead of a native crash.
    """

    def __init__(self, handle: T, free: Callable[[T], None], name: str = "resource"):
        if handle is None:
            raise ValueError(f"{name}: cannot own a null handle")
        self._handle: Optional[T] = handle
        self._free = free
        self.name = name
        self._lock = threading.Lock()

    @property
    def handle(self) -> T:
        if self._handle is None:
            raise RuntimeError(f"{self.name} already released")
        return self._handle

    @property
    def released(self) -> bool:
        return self._handle is None

    def release(self) -> bool:
        """Free the handle. Returns False if it was already released."""
        with self._lock:
            handle, self._handle = self._handle, None
        if handle is None:
            return False
        self._free(handle)
        logger.debug(f"released {self.name}")
        return True

    def __enter__(self) -> "OwnedResource[T]":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __del__(self):
        # Interpreter shutdown may already have torn down the free function's module
        if getattr(self, "_handle", None) is not None:
            try:
                self.release()
            except Exception:
                pass

    def __repr__(self) -> str:
        state = "released" if self.released else "live"
        return f"OwnedResource({self.name}, {state})"
