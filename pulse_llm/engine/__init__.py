"""
pulse-llm :: Engine

  - session: ModelSession, blocking state machine + decode loop
  - facade: InferenceFacade, async single-flight front for the UI
"""

from pulse_llm.engine.session import ModelSession, SessionState, GenerationResult
from pulse_llm.engine.facade import InferenceFacade, InferenceStatus, UNAVAILABLE_MESSAGE
