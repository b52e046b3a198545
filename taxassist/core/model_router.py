"""Model router: unified LLM interface via LiteLLM.

Two call shapes are used:
- ``respond()``: Responses API call carrying the conversation and the hosted
  retrieval tools (file search over the tax code, web search).
- ``complete()``: plain chat completion, used for small side tasks such as
  disclaimer classification.

Both walk the configured fallback chain before giving up.
"""

from __future__ import annotations

import os
from typing import Any

import litellm
import structlog

from taxassist.config import RetrievalConfig, TaxAssistConfig
from taxassist.core.types import ModelResponse

logger = structlog.get_logger()

# Suppress LiteLLM's verbose logging
litellm.suppress_debug_info = True

NO_FORMATTED_TEXT = "I processed your request but couldn't format the response properly."
NO_MESSAGE_OUTPUT = "I processed your request but couldn't find a message in the response."
NO_OUTPUT = "I processed your request, but had trouble formatting the response."


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from either a dict or an SDK object."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def build_retrieval_tools(retrieval: RetrievalConfig) -> list[dict[str, Any]]:
    """Hosted tools attached to every conversation request."""
    tools: list[dict[str, Any]] = []

    vector_store_ids = retrieval.get_vector_store_ids()
    if vector_store_ids:
        tools.append({"type": "file_search", "vector_store_ids": vector_store_ids})

    if retrieval.web_search:
        tool: dict[str, Any] = {
            "type": "web_search_preview",
            "search_context_size": retrieval.search_context_size,
        }
        location = retrieval.user_location.model_dump(exclude_none=True)
        if location:
            tool["user_location"] = {"type": "approximate", **location}
        tools.append(tool)

    return tools


def extract_output_text(response: Any) -> str:
    """Pull the assistant text out of a Responses API result.

    Prefers the aggregated ``output_text``; otherwise looks for the first
    ``message`` item and its ``output_text`` part. Falls back to a fixed
    sentence so the user always gets a reply.
    """
    output_text = _field(response, "output_text")
    if isinstance(output_text, str) and output_text:
        return output_text

    output = _field(response, "output") or []
    if not output:
        return NO_OUTPUT

    message = next((item for item in output if _field(item, "type") == "message"), None)
    if message is None or not _field(message, "content"):
        return NO_MESSAGE_OUTPUT

    part = next(
        (p for p in _field(message, "content") if _field(p, "type") == "output_text"),
        None,
    )
    text = _field(part, "text") if part is not None else None
    return text or NO_FORMATTED_TEXT


class ModelRouter:
    """Routes LLM requests through LiteLLM with fallback support."""

    def __init__(self, config: TaxAssistConfig) -> None:
        self.config = config
        self._setup_provider_keys()

    def _setup_provider_keys(self) -> None:
        """Set up API keys from config into environment variables."""
        for provider_cfg in self.config.models.providers.values():
            if provider_cfg.api_key_env and provider_cfg.api_key:
                # LiteLLM reads keys from env vars
                os.environ.setdefault(provider_cfg.api_key_env, provider_cfg.api_key)

    @property
    def default_model(self) -> str:
        return self.config.models.default

    def _models_to_try(self, model: str | None) -> list[str]:
        target_model = model or self.default_model
        models = [target_model]
        for fallback in self.config.models.fallback_chain:
            if fallback not in models:
                models.append(fallback)
        return models

    def _provider_kwargs(self, model_name: str) -> dict[str, Any]:
        provider = model_name.split("/")[0] if "/" in model_name else ""
        provider_cfg = self.config.models.providers.get(provider)
        if provider_cfg and provider_cfg.base_url:
            return {"api_base": provider_cfg.base_url}
        return {}

    async def respond(
        self,
        input_turns: list[dict[str, Any]],
        model: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> ModelResponse:
        """Send a Responses API request and return the assistant text.

        Raises RuntimeError when every model in the chain fails.
        """
        models_cfg = self.config.models
        if tools is None:
            tools = build_retrieval_tools(self.config.retrieval)

        last_error: Exception | None = None
        for model_name in self._models_to_try(model):
            kwargs: dict[str, Any] = {
                "model": model_name,
                "input": input_turns,
                "text": {"format": {"type": "text"}},
                "temperature": models_cfg.temperature,
                "top_p": models_cfg.top_p,
                "max_output_tokens": models_cfg.max_output_tokens,
                "store": models_cfg.store,
                **self._provider_kwargs(model_name),
            }
            if tools:
                kwargs["tools"] = tools

            try:
                logger.debug("model_request", model=model_name, api="responses")
                response = await litellm.aresponses(**kwargs)
            except Exception as e:
                last_error = e
                logger.warning("model_fallback", model=model_name, error=str(e))
                continue

            return self._parse_responses_result(response, model_name)

        raise RuntimeError(f"All models failed. Last error: {last_error}") from last_error

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> ModelResponse:
        """Send a chat completion request, walking the fallback chain."""
        last_error: Exception | None = None

        for model_name in self._models_to_try(model):
            kwargs: dict[str, Any] = {
                "model": model_name,
                "messages": messages,
                "stream": False,
                **self._provider_kwargs(model_name),
            }
            if temperature is not None:
                kwargs["temperature"] = temperature
            if max_tokens is not None:
                kwargs["max_tokens"] = max_tokens
            if response_format is not None:
                kwargs["response_format"] = response_format

            try:
                logger.debug("model_request", model=model_name, api="chat")
                response = await litellm.acompletion(**kwargs)
            except Exception as e:
                last_error = e
                logger.warning("model_fallback", model=model_name, error=str(e))
                continue

            return self._parse_completion(response, model_name)

        raise RuntimeError(f"All models failed. Last error: {last_error}") from last_error

    def _parse_responses_result(self, response: Any, model_name: str) -> ModelResponse:
        usage_raw = _field(response, "usage")
        usage: dict[str, int] = {}
        if usage_raw:
            usage = {
                "input_tokens": _field(usage_raw, "input_tokens", 0) or 0,
                "output_tokens": _field(usage_raw, "output_tokens", 0) or 0,
                "total_tokens": _field(usage_raw, "total_tokens", 0) or 0,
            }
        return ModelResponse(
            content=extract_output_text(response),
            model=model_name,
            usage=usage,
            finish_reason=_field(response, "status", "") or "",
        )

    def _parse_completion(self, response: Any, model_name: str) -> ModelResponse:
        """Parse LiteLLM chat completion into ModelResponse."""
        choice = response.choices[0] if response.choices else None
        if not choice:
            return ModelResponse(model=model_name)

        usage = {}
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": getattr(response.usage, "prompt_tokens", 0),
                "completion_tokens": getattr(response.usage, "completion_tokens", 0),
                "total_tokens": getattr(response.usage, "total_tokens", 0),
            }

        return ModelResponse(
            content=choice.message.content,
            model=model_name,
            usage=usage,
            finish_reason=getattr(choice, "finish_reason", "") or "",
        )
