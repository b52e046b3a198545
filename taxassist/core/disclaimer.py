"""Disclaimer classifier: decides whether a reply needs the tax disclaimer.

The classifier is fail-closed. Any error (network, invalid JSON, a label
outside the schema) yields NEEDS_DISCLAIMER.
"""

from __future__ import annotations

from enum import Enum

import structlog
from pydantic import BaseModel, Field, ValidationError

from taxassist.config import ClassifierConfig
from taxassist.core.model_router import ModelRouter

logger = structlog.get_logger()


class DisclaimerLabel(str, Enum):
    NEEDS_DISCLAIMER = "NEEDS_DISCLAIMER"
    NO_DISCLAIMER_NEEDED = "NO_DISCLAIMER_NEEDED"


class DisclaimerClassification(BaseModel):
    """Structured classifier output."""

    class_label: DisclaimerLabel
    explanation: str = Field(
        default="",
        description="Explanation for why the message needs a disclaimer or not",
    )

    @property
    def needs_disclaimer(self) -> bool:
        return self.class_label == DisclaimerLabel.NEEDS_DISCLAIMER


FAIL_CLOSED_EXPLANATION = "Classification failed, defaulting to showing disclaimer for safety"

CLASSIFIER_PROMPT = """\
Analyze the following tax assistant response and determine if it needs a tax disclaimer.

Apply these rules:
1. If the response contains specific tax advice, calculations, or references to tax laws/codes, it NEEDS_DISCLAIMER
2. If the response interprets tax regulations or suggests specific actions related to taxes, it NEEDS_DISCLAIMER
3. If the response provides numbers, percentages, or dollar amounts related to taxes, it NEEDS_DISCLAIMER
4. If the response recommends filing methods or specific forms, it NEEDS_DISCLAIMER
5. If the response references or cites information from the U.S. Tax Code, it NEEDS_DISCLAIMER
6. If the response provides factual information that would typically be sourced from the internet (such as statistics, dates, rates, or formal definitions), it NEEDS_DISCLAIMER
7. If the response discusses economic policies, market trends, or business regulations, even if not directly tax-related, it NEEDS_DISCLAIMER
8. If the response is general conversation, greetings, or clarification questions without factual content, it does NOT need a disclaimer

Answer with a JSON object: {{"class_label": "NEEDS_DISCLAIMER" | "NO_DISCLAIMER_NEEDED", "explanation": "<one sentence>"}}

Response to analyze:
{text}
"""


def fail_closed(reason: str = FAIL_CLOSED_EXPLANATION) -> DisclaimerClassification:
    return DisclaimerClassification(
        class_label=DisclaimerLabel.NEEDS_DISCLAIMER,
        explanation=reason,
    )


class DisclaimerClassifier:
    """Labels assistant replies via a small, cheap model."""

    def __init__(self, model_router: ModelRouter, config: ClassifierConfig) -> None:
        self.model = model_router
        self.config = config

    async def classify(self, text: str) -> DisclaimerClassification:
        """Classify ``text``. Never raises."""
        if not self.config.enabled:
            return fail_closed("Classifier disabled")

        try:
            return await self._classify(text)
        except Exception as e:
            logger.error("disclaimer_classification_failed", error=str(e))
            return fail_closed()

    async def _classify(self, text: str) -> DisclaimerClassification:
        messages = [{"role": "user", "content": CLASSIFIER_PROMPT.format(text=text)}]
        attempts = max(0, self.config.max_retries) + 1
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            response = await self.model.complete(
                messages=messages,
                model=self.config.model,
                response_format={"type": "json_object"},
            )
            try:
                result = DisclaimerClassification.model_validate_json(response.content or "")
            except ValidationError as e:
                last_error = e
                logger.warning(
                    "disclaimer_output_invalid",
                    attempt=attempt,
                    content_preview=(response.content or "")[:120],
                )
                continue
            logger.info(
                "disclaimer_classified",
                label=result.class_label.value,
                explanation=result.explanation,
            )
            return result

        raise ValueError(f"classifier output invalid after {attempts} attempts: {last_error}")
