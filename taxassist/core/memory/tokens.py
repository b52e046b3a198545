"""Token counter: measures text in the target model's context units.

Uses tiktoken with the encoding of the configured model. When no encoding
can be loaded (unknown model and no cached fallback encoding), the counter
degrades to ~4 characters per token and says so in the log.
"""

from __future__ import annotations

import tiktoken
import structlog

from taxassist.core.types import ContentType, Turn

logger = structlog.get_logger()

DEFAULT_MODEL = "gpt-4o"
DEFAULT_ENCODING = "o200k_base"

_CHARS_PER_TOKEN = 4

_COUNTED_TYPES = (ContentType.INPUT_TEXT, ContentType.OUTPUT_TEXT)


def _load_encoding(model: str, fallback_encoding: str):
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        logger.info("tokenizer_model_unknown", model=model, encoding=fallback_encoding)
    except Exception as e:
        logger.warning("tokenizer_model_load_failed", model=model, error=str(e))

    try:
        return tiktoken.get_encoding(fallback_encoding)
    except Exception as e:
        logger.warning(
            "tokenizer_unavailable",
            encoding=fallback_encoding,
            error=str(e),
            approximation=f"{_CHARS_PER_TOKEN} chars/token",
        )
        return None


class TokenCounter:
    """Counts tokens in text, turns and sequences of turns."""

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        fallback_encoding: str = DEFAULT_ENCODING,
    ) -> None:
        self.model = model
        self.encoding = _load_encoding(model, fallback_encoding)

    @property
    def is_exact(self) -> bool:
        """False when counts are the character-based approximation."""
        return self.encoding is not None

    def count(self, text: str) -> int:
        """Count tokens in a single text string."""
        if not isinstance(text, str):
            raise TypeError(f"can only count tokens in str, got {type(text).__name__}")
        if not text:
            return 0
        if self.encoding is None:
            return -(-len(text) // _CHARS_PER_TOKEN)
        # Special-token text from users is counted as plain text.
        return len(self.encoding.encode(text, disallowed_special=()))

    def count_turn(self, turn: Turn) -> int:
        """Sum over the text parts of one turn."""
        return sum(
            self.count(part.text)
            for part in turn.content
            if part.type in _COUNTED_TYPES
        )

    def count_turns(self, turns: list[Turn]) -> int:
        return sum(self.count_turn(t) for t in turns)
