"""
pulse-llm: On-device inference session for a health-coach chat.

One quantized model, one decoding context, one reply at a time.

  Artifact:   .gguf file located by name on disk
  Prompt:     Llama 3 chat template (system + health data + user)
  Decode:     prompt in sub-batches, then one token per step
  Sampling:   top-k -> top-p -> temperature -> seeded draw
  Surface:    async facade with observable status for the UI

INL - 2025
"""

__version__ = "0.1.0"
