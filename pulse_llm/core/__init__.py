"""
pulse-llm :: Core

Building blocks with no model runtime attached.
  - errors: typed failures
  - config: SessionConfig
  - registry: model artifact catalogue and locator
  - tokenizer: text <-> token ids
  - chat_template: prompt assembly
  - batch: decode batch buffer
  - sampling: sampler chain
  - resources: scoped ownership of native handles
"""

from pulse_llm.core.errors import (
    InferenceError, LoadError, ModelNotFound, ModelLoadError, ContextCreateError,
    GenerationError, EncodingError, ContextOverflow, DecodeStepError,
    Cancelled, Busy, ModelNotLoaded,
)
from pulse_llm.core.config import SessionConfig
from pulse_llm.core.registry import register_artifact, list_artifacts, locate_artifact, ModelInfo
from pulse_llm.core.tokenizer import TokenCodec, ByteLevelVocab, IncrementalText
from pulse_llm.core.chat_template import ChatTemplate, ConversationTurn, PromptBuilder
from pulse_llm.core.batch import BatchBuffer
from pulse_llm.core.sampling import SamplingParams, Sampler
from pulse_llm.core.resources import OwnedResource
