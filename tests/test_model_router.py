"""Tests for the LiteLLM model router and Responses API parsing."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from taxassist.config import ModelsConfig, RetrievalConfig, TaxAssistConfig, UserLocation
from taxassist.core.model_router import (
    NO_FORMATTED_TEXT,
    NO_MESSAGE_OUTPUT,
    NO_OUTPUT,
    ModelRouter,
    build_retrieval_tools,
    extract_output_text,
)


# === Shared fixtures ===

@pytest.fixture
def config():
    return TaxAssistConfig(
        models=ModelsConfig(
            default="openai/gpt-4.1",
            fallback_chain=["openai/gpt-4o"],
        ),
        retrieval=RetrievalConfig(vector_store_ids=["vs_tax_code"]),
    )


@pytest.fixture
def router(config):
    return ModelRouter(config)


# =============================================================
# Output extraction
# =============================================================

class TestExtractOutputText:
    def test_aggregated_output_text(self):
        assert extract_output_text({"output_text": "The rate is 22%."}) == "The rate is 22%."

    def test_message_item_fallback(self):
        response = {
            "output_text": "",
            "output": [
                {"type": "web_search_call", "status": "completed"},
                {
                    "type": "message",
                    "content": [{"type": "output_text", "text": "From the message item."}],
                },
            ],
        }
        assert extract_output_text(response) == "From the message item."

    def test_sdk_objects(self):
        part = SimpleNamespace(type="output_text", text="From an object.")
        message = SimpleNamespace(type="message", content=[part])
        response = SimpleNamespace(output_text=None, output=[message])
        assert extract_output_text(response) == "From an object."

    def test_no_output(self):
        assert extract_output_text({"output": []}) == NO_OUTPUT

    def test_no_message_item(self):
        response = {"output": [{"type": "file_search_call"}]}
        assert extract_output_text(response) == NO_MESSAGE_OUTPUT

    def test_message_without_text_part(self):
        response = {"output": [{"type": "message", "content": [{"type": "refusal"}]}]}
        assert extract_output_text(response) == NO_FORMATTED_TEXT


# =============================================================
# Retrieval tools
# =============================================================

class TestBuildRetrievalTools:
    def test_file_and_web_search(self):
        tools = build_retrieval_tools(RetrievalConfig(vector_store_ids=["vs_1"]))
        assert tools == [
            {"type": "file_search", "vector_store_ids": ["vs_1"]},
            {"type": "web_search_preview", "search_context_size": "high"},
        ]

    def test_user_location(self):
        retrieval = RetrievalConfig(
            user_location=UserLocation(country="US", region="California"),
        )
        web = build_retrieval_tools(retrieval)[-1]
        assert web["user_location"] == {
            "type": "approximate",
            "country": "US",
            "region": "California",
        }

    def test_vector_store_from_env(self, monkeypatch):
        monkeypatch.setenv("OPENAI_VECTOR_STORE_ID", "vs_a, vs_b")
        tools = build_retrieval_tools(RetrievalConfig(web_search=False))
        assert tools == [{"type": "file_search", "vector_store_ids": ["vs_a", "vs_b"]}]

    def test_nothing_configured(self, monkeypatch):
        monkeypatch.delenv("OPENAI_VECTOR_STORE_ID", raising=False)
        assert build_retrieval_tools(RetrievalConfig(web_search=False)) == []


# =============================================================
# Responses API calls
# =============================================================

class TestRespond:
    @pytest.mark.asyncio
    async def test_request_parameters(self, router):
        result = {
            "output_text": "Hello!",
            "status": "completed",
            "usage": {"input_tokens": 12, "output_tokens": 3, "total_tokens": 15},
        }
        turns = [{"role": "user", "content": [{"type": "input_text", "text": "hi"}]}]
        with patch(
            "taxassist.core.model_router.litellm.aresponses",
            new=AsyncMock(return_value=result),
        ) as aresponses:
            response = await router.respond(turns)

        kwargs = aresponses.call_args.kwargs
        assert kwargs["model"] == "openai/gpt-4.1"
        assert kwargs["input"] == turns
        assert kwargs["temperature"] == 1.0
        assert kwargs["top_p"] == 1.0
        assert kwargs["max_output_tokens"] == 16384
        assert kwargs["store"] is True
        assert kwargs["text"] == {"format": {"type": "text"}}
        assert [t["type"] for t in kwargs["tools"]] == ["file_search", "web_search_preview"]

        assert response.content == "Hello!"
        assert response.model == "openai/gpt-4.1"
        assert response.usage == {"input_tokens": 12, "output_tokens": 3, "total_tokens": 15}
        assert response.finish_reason == "completed"

    @pytest.mark.asyncio
    async def test_fallback_chain(self, router):
        with patch(
            "taxassist.core.model_router.litellm.aresponses",
            new=AsyncMock(side_effect=[TimeoutError("slow"), {"output_text": "ok"}]),
        ) as aresponses:
            response = await router.respond([])

        assert aresponses.await_count == 2
        assert aresponses.call_args.kwargs["model"] == "openai/gpt-4o"
        assert response.model == "openai/gpt-4o"

    @pytest.mark.asyncio
    async def test_all_models_fail(self, router):
        with patch(
            "taxassist.core.model_router.litellm.aresponses",
            new=AsyncMock(side_effect=ConnectionError("down")),
        ):
            with pytest.raises(RuntimeError, match="All models failed"):
                await router.respond([])

    @pytest.mark.asyncio
    async def test_provider_base_url(self):
        config = TaxAssistConfig()
        config.models.providers["openai"].base_url = "https://proxy.internal/v1"
        router = ModelRouter(config)
        with patch(
            "taxassist.core.model_router.litellm.aresponses",
            new=AsyncMock(return_value={"output_text": "ok"}),
        ) as aresponses:
            await router.respond([], tools=[])

        kwargs = aresponses.call_args.kwargs
        assert kwargs["api_base"] == "https://proxy.internal/v1"
        assert "tools" not in kwargs


# =============================================================
# Chat completions
# =============================================================

class TestComplete:
    @pytest.mark.asyncio
    async def test_parses_completion(self, router):
        completion = MagicMock()
        completion.choices = [MagicMock()]
        completion.choices[0].message.content = '{"class_label": "NEEDS_DISCLAIMER"}'
        completion.choices[0].finish_reason = "stop"
        completion.usage.prompt_tokens = 40
        completion.usage.completion_tokens = 10
        completion.usage.total_tokens = 50

        with patch(
            "taxassist.core.model_router.litellm.acompletion",
            new=AsyncMock(return_value=completion),
        ) as acompletion:
            response = await router.complete(
                [{"role": "user", "content": "classify"}],
                model="openai/gpt-4.1-mini",
                response_format={"type": "json_object"},
            )

        kwargs = acompletion.call_args.kwargs
        assert kwargs["model"] == "openai/gpt-4.1-mini"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["stream"] is False
        assert response.content == '{"class_label": "NEEDS_DISCLAIMER"}'
        assert response.usage["total_tokens"] == 50

    @pytest.mark.asyncio
    async def test_empty_choices(self, router):
        completion = MagicMock()
        completion.choices = []
        with patch(
            "taxassist.core.model_router.litellm.acompletion",
            new=AsyncMock(return_value=completion),
        ):
            response = await router.complete([])
        assert response.content is None
