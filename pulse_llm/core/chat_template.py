"""
pulse-llm :: Chat Template

Turns (role, text) into the flat prompt string the model was tuned on.
Templates are Jinja2; the built-in one is the Llama 3 instruct format:

  <|begin_of_text|>
  <|start_header_id|>system<|end_header_id|>\\n\\n ... <|eot_id|>
  <|start_header_id|>user<|end_header_id|>\\n\\n ... <|eot_id|>
  <|start_header_id|>assistant<|end_header_id|>\\n\\n

The builder holds no history and never truncates: if the context block
is too large, decoding reports ContextOverflow later.

INL - 2025
"""

from pathlib import Path
from typing import Dict, Optional, Sequence, Union
from dataclasses import dataclass

ROLES = ("system", "user", "assistant")

ROLE_MARKERS = (
    "<|begin_of_text|>",
    "<|start_header_id|>",
    "<|end_header_id|>",
    "<|eot_id|>",
    "<|end_of_text|>",
    "<|eom_id|>",
)

LLAMA3_TEMPLATE = (
    "<|begin_of_text|>"
    "{% for message in messages %}"
    "<|start_header_id|>{{ message.role }}<|end_header_id|>\n\n"
    "{{ message.content }}<|eot_id|>"
    "{% endfor %}"
    "{% if add_generation_prompt %}"
    "<|start_header_id|>assistant<|end_header_id|>\n\n"
    "{% endif %}"
)

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a helpful AI health coach. You have access to the user's health data. "
    "Give personalized, actionable advice based on their metrics. "
    "Be warm, encouraging, and concise."
)

CONTEXT_HEADER = "USER'S HEALTH DATA:"


@dataclass(frozen=True)
class ConversationTurn:
    """One utterance: who said it and what."""
    role: str
    text: str

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}, got {self.role!r}")

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.text}


def _raise_template_error(message: str):
    from jinja2.exceptions import TemplateError
    raise TemplateError(message)


class ChatTemplate:
    """
    Jinja2 chat template, rendered in a sandbox.

    Accepts the chat_template.jinja files shipped with instruct models:
    they see `messages` (role/content dicts), `add_generation_prompt`,
    `bos_token`, and may call raise_exception().
    """

    def __init__(self, source: str, bos_token: str = ROLE_MARKERS[0]):
        from jinja2.sandbox import ImmutableSandboxedEnvironment

        env = ImmutableSandboxedEnvironment(keep_trailing_newline=True)
        env.globals["raise_exception"] = _raise_template_error
        env.globals["bos_token"] = bos_token
        self.source = source
        self.template = env.from_string(source)

    def render(
        self,
        turns: Sequence[ConversationTurn],
        add_generation_prompt: bool = True,
    ) -> str:
        return self.template.render(
            messages=[turn.to_message() for turn in turns],
            add_generation_prompt=add_generation_prompt,
        )

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ChatTemplate":
        return cls(Path(path).read_text(encoding="utf-8"))


class PromptBuilder:
    """Stateless prompt assembly: system instruction + context block + user turn."""

    def __init__(self, template: Optional[ChatTemplate] = None):
        self.template = template or ChatTemplate(LLAMA3_TEMPLATE)

    @staticmethod
    def system_text(system_instruction: str, context_block: str) -> str:
        if not context_block:
            return system_instruction
        return f"{system_instruction}\n\n{CONTEXT_HEADER}\n{context_block}"

    def build(self, system_instruction: str, context_block: str, user_utterance: str) -> str:
        """Single-shot prompt: one system turn carrying the context, one user turn."""
        return self.build_turns([
            ConversationTurn("system", self.system_text(system_instruction, context_block)),
            ConversationTurn("user", user_utterance),
        ])

    def build_turns(
        self,
        turns: Sequence[ConversationTurn],
        add_generation_prompt: bool = True,
    ) -> str:
        """Render whatever turns the caller chose, in order."""
        return self.template.render(turns, add_generation_prompt=add_generation_prompt)


def strip_role_markers(text: str) -> str:
    """Remove any template delimiter that leaked into generated text."""
    for marker in ROLE_MARKERS:
        text = text.replace(marker, "")
    return text
