"""Tests for turn types and their persisted form."""

from __future__ import annotations

import pytest

from taxassist.core.types import (
    ContentType,
    Role,
    Turn,
    history_from_dicts,
    history_to_dicts,
)


class TestTurn:
    def test_content_type_follows_role(self):
        assert Turn.user("q").content[0].type == ContentType.INPUT_TEXT
        assert Turn.system("s").content[0].type == ContentType.INPUT_TEXT
        assert Turn.assistant("a").content[0].type == ContentType.OUTPUT_TEXT

    def test_to_dict(self):
        assert Turn.assistant("Hi").to_dict() == {
            "role": "assistant",
            "content": [{"type": "output_text", "text": "Hi"}],
        }

    def test_history_survives_persisted_form(self):
        history = [Turn.user("Is my HSA deductible?"), Turn.assistant("Generally, yes.")]
        assert history_from_dicts(history_to_dicts(history)) == history


class TestFromDict:
    def test_unknown_role(self):
        with pytest.raises(ValueError):
            Turn.from_dict({"role": "tool", "content": []})

    def test_content_not_a_list(self):
        with pytest.raises(ValueError):
            Turn.from_dict({"role": "user", "content": "hello"})

    def test_text_not_a_string(self):
        with pytest.raises(ValueError):
            Turn.from_dict({"role": "user", "content": [{"type": "input_text", "text": 5}]})

    def test_missing_fields(self):
        with pytest.raises(KeyError):
            Turn.from_dict({"role": "user"})

    def test_history_must_be_list(self):
        with pytest.raises(ValueError):
            history_from_dicts({"role": "user"})

    def test_roles_parsed(self):
        turn = Turn.from_dict({"role": "user", "content": [{"type": "input_text", "text": "x"}]})
        assert turn.role == Role.USER
        assert turn.text == "x"
