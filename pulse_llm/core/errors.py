"""
pulse-llm :: Errors

Typed failures of the inference session.

  Load time:        ModelNotFound, ModelLoadError, ContextCreateError
  Generation time:  EncodingError, ContextOverflow, DecodeStepError
  Control:          Cancelled, Busy, ModelNotLoaded

Load-time errors leave the session in ERROR until load_if_needed() is
called again. Generation-time errors abort one call only.

INL - 2025
"""

from typing import Optional


class InferenceError(RuntimeError):
    """Base class for every error raised by the inference core."""

    kind: str = "InferenceError"

    def __init__(self, message: str = "", detail: Optional[dict] = None):
        super().__init__(message or self.kind)
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": str(self), **self.detail}


# =========================================================================
# Load time
# =========================================================================

class LoadError(InferenceError):
    """The model could not be brought to READY."""
    kind = "LoadError"


class ModelNotFound(LoadError):
    """No packaged model artifact matched any candidate name."""
    kind = "ModelNotFound"


class ModelLoadError(LoadError):
    """Weights were found but could not be loaded."""
    kind = "ModelLoadError"


class ContextCreateError(LoadError):
    """The decoding context (KV cache) could not be allocated."""
    kind = "ContextCreateError"


# =========================================================================
# Generation time
# =========================================================================

class GenerationError(InferenceError):
    """One generation call failed; the session stays usable."""
    kind = "GenerationError"


class EncodingError(GenerationError):
    """Text could not be turned into tokens."""
    kind = "EncodingError"


class ContextOverflow(GenerationError):
    """The token budget of the decoding context would be exceeded."""
    kind = "ContextOverflow"


class DecodeStepError(GenerationError):
    """The backend rejected a decode call, or sampling its logits failed."""
    kind = "DecodeStepError"

    def __init__(self, message: str = "", status: int = 0, detail: Optional[dict] = None):
        detail = dict(detail or {})
        detail.setdefault("status", status)
        super().__init__(message, detail)
        self.status = status


# =========================================================================
# Control
# =========================================================================

class Cancelled(InferenceError):
    """Caller-initiated stop. Not a failure."""
    kind = "Cancelled"


class Busy(InferenceError):
    """A generation is already in flight."""
    kind = "Busy"


class ModelNotLoaded(InferenceError):
    """generate() was called before a successful load."""
    kind = "ModelNotLoaded"
