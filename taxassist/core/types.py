"""Shared data types for the tax assistant."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Message role in conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ContentType(str, Enum):
    """Text part type; direction is relative to the model."""

    INPUT_TEXT = "input_text"
    OUTPUT_TEXT = "output_text"


# User and system turns are model input, assistant turns are model output.
_CONTENT_TYPE_FOR_ROLE = {
    Role.SYSTEM: ContentType.INPUT_TEXT,
    Role.USER: ContentType.INPUT_TEXT,
    Role.ASSISTANT: ContentType.OUTPUT_TEXT,
}


@dataclass
class ContentPart:
    """One text segment of a turn."""

    type: ContentType
    text: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type.value, "text": self.text}


@dataclass
class Turn:
    """A single message attributed to the user, the assistant or the system."""

    role: Role
    content: list[ContentPart] = field(default_factory=list)

    @classmethod
    def from_text(cls, role: Role, text: str) -> Turn:
        """Build a single-part turn with the content type matching the role."""
        return cls(role=role, content=[ContentPart(_CONTENT_TYPE_FOR_ROLE[role], text)])

    @classmethod
    def user(cls, text: str) -> Turn:
        return cls.from_text(Role.USER, text)

    @classmethod
    def assistant(cls, text: str) -> Turn:
        return cls.from_text(Role.ASSISTANT, text)

    @classmethod
    def system(cls, text: str) -> Turn:
        return cls.from_text(Role.SYSTEM, text)

    @property
    def text(self) -> str:
        """All text parts joined together."""
        return "".join(part.text for part in self.content)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted / Responses API input format."""
        return {
            "role": self.role.value,
            "content": [part.to_dict() for part in self.content],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Turn:
        """Parse a persisted turn.

        Raises ValueError (or KeyError/TypeError) on malformed input.
        """
        role = Role(raw["role"])
        parts = raw["content"]
        if not isinstance(parts, list):
            raise ValueError(f"turn content must be a list, got {type(parts).__name__}")
        content = []
        for part in parts:
            text = part["text"]
            if not isinstance(text, str):
                raise ValueError("content text must be a string")
            content.append(ContentPart(ContentType(part["type"]), text))
        return cls(role=role, content=content)


def history_to_dicts(history: list[Turn]) -> list[dict[str, Any]]:
    return [turn.to_dict() for turn in history]


def history_from_dicts(raw: Any) -> list[Turn]:
    """Parse a persisted history array. Raises ValueError if it is not a list."""
    if not isinstance(raw, list):
        raise ValueError(f"history must be a JSON array, got {type(raw).__name__}")
    return [Turn.from_dict(item) for item in raw]


@dataclass
class ModelResponse:
    """Response from an LLM model call."""

    content: str | None = None
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    finish_reason: str = ""
