"""
pulse-llm :: Tokenizer

text (str) <-> token ids (List[int]), against the model's own vocabulary.

Pieces are bytes, not str: a multi-byte character can be split across
two tokens, so pieces are only ever interpreted after concatenation
(see IncrementalText).

Vocabularies:
  - the loaded GGUF model's vocab (backends/llama_cpp_backend.py)
  - ByteLevelVocab: a HuggingFace tokenizers byte-level BPE (tokenizer.json)

INL - 2025
"""

import codecs
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence

from pulse_llm.core.errors import EncodingError


class Vocabulary(ABC):
    """
    What the codec needs from a model vocabulary.

    Special markers present in the text (e.g. "<|eot_id|>") are always
    parsed as their control token.
    """

    @abstractmethod
    def tokenize(self, text: bytes, add_special: bool) -> List[int]:
        """UTF-8 bytes -> token ids. Raises ValueError / RuntimeError on rejection."""

    @abstractmethod
    def token_to_piece(self, token_id: int, special: bool) -> bytes:
        """One token -> its bytes. Control tokens render as b"" unless special=True."""

    @abstractmethod
    def is_eog(self, token_id: int) -> bool:
        """End-of-generation token?"""

    @property
    @abstractmethod
    def n_vocab(self) -> int:
        ...


class TokenCodec:
    """
    Encoder/decoder bound to one vocabulary.

    Input:  text (str)
    Output: token IDs (List[int])
    """

    def __init__(self, vocab: Vocabulary, render_special: bool = False):
        self.vocab = vocab
        self.render_special = render_special

    def encode(self, text: str, add_special_tokens: bool = False) -> List[int]:
        """Text -> token IDs. Deterministic for a given vocabulary."""
        try:
            raw = text.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise EncodingError(f"text is not valid UTF-8: {exc.reason}") from exc
        try:
            ids = self.vocab.tokenize(raw, add_special_tokens)
        except (ValueError, RuntimeError) as exc:
            raise EncodingError(f"vocabulary rejected input: {exc}") from exc
        return [int(t) for t in ids]

    def decode_piece(self, token_id: int) -> bytes:
        """Token ID -> UTF-8 fragment (possibly partial)."""
        return self.vocab.token_to_piece(token_id, self.render_special)

    def detokenize(self, token_ids: Iterable[int]) -> str:
        """Token IDs -> text."""
        raw = b"".join(self.decode_piece(t) for t in token_ids)
        return raw.decode("utf-8", errors="replace")

    def is_eog(self, token_id: int) -> bool:
        return self.vocab.is_eog(token_id)

    @property
    def vocab_size(self) -> int:
        return self.vocab.n_vocab

    def text_stream(self) -> "IncrementalText":
        return IncrementalText()


class IncrementalText:
    """
    Accumulates piece bytes and exposes only complete characters.

    A trailing partial character stays buffered until the next piece
    arrives; finish() flushes it (invalid leftovers become U+FFFD).
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._parts: List[str] = []

    def push(self, piece: bytes) -> str:
        """Add one piece, return the newly completed text."""
        new = self._decoder.decode(piece)
        if new:
            self._parts.append(new)
        return new

    def finish(self) -> str:
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._parts.append(tail)
        return self.text

    @property
    def text(self) -> str:
        return "".join(self._parts)


# =========================================================================
# HuggingFace byte-level BPE
# =========================================================================

LLAMA3_EOG_TOKENS = ("<|eot_id|>", "<|end_of_text|>", "<|eom_id|>")


def bytes_to_unicode() -> Dict[int, str]:
    """GPT-2 byte <-> printable unicode table used by byte-level BPE."""
    bs = (
        list(range(ord("!"), ord("~") + 1))
        + list(range(ord("¡"), ord("¬") + 1))
        + list(range(ord("®"), ord("ÿ") + 1))
    )
    cs = bs[:]
    n = 0
    for b in range(256):
        if b not in bs:
            bs.append(b)
            cs.append(256 + n)
            n += 1
    return dict(zip(bs, (chr(c) for c in cs)))


class ByteLevelVocab(Vocabulary):
    """
    Vocabulary over a `tokenizers.Tokenizer` with a byte-level model.

    Uses tokenizers library (HuggingFace fast tokenizer).
    """

    def __init__(self, tokenizer, eog_tokens: Sequence[str] = LLAMA3_EOG_TOKENS):
        self.tokenizer = tokenizer
        self._byte_decoder = {c: b for b, c in bytes_to_unicode().items()}
        self._special_ids = {
            int(i) for i, tok in tokenizer.get_added_tokens_decoder().items() if tok.special
        }
        self._eog_ids = set()
        for name in eog_tokens:
            token_id = tokenizer.token_to_id(name)
            if token_id is not None:
                self._eog_ids.add(token_id)

    @staticmethod
    def from_file(tokenizer_path: str, eog_tokens: Sequence[str] = LLAMA3_EOG_TOKENS) -> "ByteLevelVocab":
        """Load a tokenizer.json."""
        from tokenizers import Tokenizer

        return ByteLevelVocab(Tokenizer.from_file(tokenizer_path), eog_tokens)

    def tokenize(self, text: bytes, add_special: bool) -> List[int]:
        return self.tokenizer.encode(text.decode("utf-8"), add_special_tokens=add_special).ids

    def token_to_piece(self, token_id: int, special: bool) -> bytes:
        content = self.tokenizer.id_to_token(token_id)
        if content is None:
            raise ValueError(f"token id {token_id} not in vocabulary")
        if token_id in self._special_ids:
            return content.encode("utf-8") if special else b""
        try:
            return bytes(self._byte_decoder[c] for c in content)
        except KeyError:
            # not a byte-level symbol; let the tokenizer's own decoder render it
            return self.tokenizer.decode([token_id], skip_special_tokens=False).encode("utf-8")

    def is_eog(self, token_id: int) -> bool:
        return token_id in self._eog_ids

    @property
    def n_vocab(self) -> int:
        return self.tokenizer.get_vocab_size(with_added_tokens=True)

    def token_id(self, token: str) -> Optional[int]:
        return self.tokenizer.token_to_id(token)
