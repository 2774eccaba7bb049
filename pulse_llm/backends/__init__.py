"""
pulse-llm :: Backends

Runtimes that ModelSession drives:
  - llama_cpp: GGUF models through llama.cpp (default)
  - scripted:  weight-free deterministic backend

INL - 2025
"""

from pulse_llm.backends.base import ModelBackend, NativeContext, NativeModel

BACKENDS = ("llama_cpp", "scripted")


def get_backend(name: str, **kwargs) -> ModelBackend:
    """Instantiate a backend by name. llama_cpp is imported lazily."""
    if name == "llama_cpp":
        from pulse_llm.backends.llama_cpp_backend import LlamaCppBackend
        return LlamaCppBackend(**kwargs)
    if name == "scripted":
        from pulse_llm.backends.scripted import ScriptedBackend
        return ScriptedBackend(**kwargs)
    raise ValueError(f"Unknown backend '{name}'. Available: {list(BACKENDS)}")


__all__ = ["ModelBackend", "NativeModel", "NativeContext", "BACKENDS", "get_backend"]
