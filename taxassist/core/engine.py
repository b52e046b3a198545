"""Core engine: one conversation turn from inbound text to outbound replies.

Per turn:
  Idle -> HistoryLoaded -> RequestBuilt -> ResponseReceived -> Classified
  -> Persisted -> Idle

The restart command short-circuits to Idle after wiping the conversation.
A failed model call ends the turn with an apology and leaves history and
storage untouched. Classifier and storage failures degrade silently (see
DisclaimerClassifier and HistoryStore).

Turns for the same conversation are not serialized; if two race, the last
one to finish wins both the in-memory and the stored history.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from taxassist.config import TaxAssistConfig
from taxassist.core.disclaimer import DisclaimerClassification, DisclaimerClassifier
from taxassist.core.memory.history import HistoryStore
from taxassist.core.memory.session import SessionState
from taxassist.core.memory.tokens import TokenCounter
from taxassist.core.memory.trimmer import HistoryTrimmer, TrimResult
from taxassist.core.model_router import ModelRouter
from taxassist.core.types import Turn

logger = structlog.get_logger()


class TurnState(str, Enum):
    IDLE = "idle"
    HISTORY_LOADED = "history_loaded"
    REQUEST_BUILT = "request_built"
    RESPONSE_RECEIVED = "response_received"
    CLASSIFIED = "classified"
    PERSISTED = "persisted"


@dataclass
class TurnReply:
    """Messages to send back, in order, plus what happened on the way."""

    messages: list[str] = field(default_factory=list)
    states: list[TurnState] = field(default_factory=lambda: [TurnState.IDLE])
    reset: bool = False
    failed: bool = False
    classification: DisclaimerClassification | None = None
    trim: TrimResult | None = None

    @property
    def text(self) -> str:
        return "\n\n".join(self.messages)

    def advance(self, state: TurnState) -> None:
        self.states.append(state)
        logger.debug("turn_state", state=state.value)


class Engine:
    """Orchestrates history, model, classifier and persistence for a turn."""

    def __init__(
        self,
        config: TaxAssistConfig,
        model_router: ModelRouter,
        token_counter: TokenCounter,
        history_store: HistoryStore,
        trimmer: HistoryTrimmer,
        classifier: DisclaimerClassifier,
        session_state: SessionState | None = None,
    ) -> None:
        self.config = config
        self.model = model_router
        self.tokens = token_counter
        self.store = history_store
        self.trimmer = trimmer
        self.classifier = classifier
        self.sessions = session_state or SessionState()

    # === Helpers ===

    def is_restart_command(self, text: str) -> bool:
        return text.strip().lower() == self.config.bot.restart_command.lower()

    def _now(self) -> datetime:
        try:
            tz = ZoneInfo(self.config.bot.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("timezone_invalid", timezone=self.config.bot.timezone)
            tz = timezone.utc
        return datetime.now(tz)

    def render_system_prompt(self, now: datetime | None = None) -> str:
        """Instruction preamble for this turn, stamped with today's date."""
        now = now or self._now()
        date = now.strftime("%A, %B %d, %Y, %I:%M %p %Z").strip()
        return self.config.system_prompt.replace("{date}", date)

    def welcome(self) -> list[str]:
        """First-contact messages for a new participant."""
        return [self.config.bot.standard_disclaimer, self.config.bot.restart_hint]

    def build_request(
        self,
        system_prompt: str,
        history: list[Turn],
        user_text: str,
    ) -> list[dict[str, Any]]:
        """[system preamble, prior turns..., new user turn] in wire format."""
        turns = [Turn.system(system_prompt), *history, Turn.user(user_text)]
        return [t.to_dict() for t in turns]

    async def load_history(self, conversation_id: str) -> list[Turn]:
        """In-memory history, restored from the store when memory is empty."""
        history = self.sessions.get(conversation_id)
        if history:
            return history

        history = await self.store.load(conversation_id)
        if history:
            self.sessions.set(conversation_id, history)
            logger.info(
                "history_restored",
                conversation_id=conversation_id,
                turns=len(history),
                history_tokens=self.tokens.count_turns(history),
            )
        return history

    # === Turn processing ===

    async def reset(self, conversation_id: str) -> TurnReply:
        """Wipe in-memory and stored history for the conversation."""
        self.sessions.clear(conversation_id)
        await self.store.delete(conversation_id)
        logger.info("conversation_reset", conversation_id=conversation_id)

        bot = self.config.bot
        return TurnReply(
            messages=[bot.reset_confirmation, bot.standard_disclaimer, bot.restart_hint],
            reset=True,
        )

    async def process_message(self, conversation_id: str, user_text: str) -> TurnReply:
        """Process one inbound message and return the replies to send."""
        user_text = user_text.strip()
        if self.is_restart_command(user_text):
            return await self.reset(conversation_id)

        reply = TurnReply()
        log = logger.bind(conversation_id=conversation_id)

        # Idle -> HistoryLoaded
        history = await self.load_history(conversation_id)
        reply.advance(TurnState.HISTORY_LOADED)

        # HistoryLoaded -> RequestBuilt
        system_prompt = self.render_system_prompt()
        request = self.build_request(system_prompt, history, user_text)
        system_tokens = self.tokens.count(system_prompt)
        user_tokens = self.tokens.count(user_text)
        history_tokens = self.tokens.count_turns(history)
        reply.advance(TurnState.REQUEST_BUILT)
        log.info(
            "request_built",
            total_tokens=system_tokens + history_tokens + user_tokens,
            system_tokens=system_tokens,
            history_tokens=history_tokens,
            user_tokens=user_tokens,
            history_turns=len(history),
        )

        # RequestBuilt -> ResponseReceived
        try:
            response = await self.model.respond(request)
        except Exception as e:
            log.error("model_call_failed", error=str(e))
            reply.messages = [self.config.bot.apology]
            reply.failed = True
            reply.advance(TurnState.IDLE)
            return reply

        response_text = response.content or ""
        reply.advance(TurnState.RESPONSE_RECEIVED)
        log.info(
            "response_received",
            model=response.model,
            response_tokens=self.tokens.count(response_text),
        )

        # ResponseReceived -> Classified
        classification = await self.classifier.classify(response_text)
        reply.classification = classification
        outbound = response_text
        if classification.needs_disclaimer:
            outbound += self.config.bot.short_disclaimer
        reply.messages = [outbound]
        reply.advance(TurnState.CLASSIFIED)

        # Classified -> Persisted
        history = [*history, Turn.user(user_text), Turn.assistant(response_text)]
        # The new turn is inside ``history`` now, so user_tokens is 0.
        trim = self.trimmer.trim(history, system_tokens, 0)
        reply.trim = trim
        history = trim.history
        if trim.budget_exceeded:
            log.warning(
                "turn_budget_exceeded",
                total_tokens=trim.total_tokens,
                max_tokens=trim.max_tokens,
                oversized_exchanges=trim.oversized_exchanges,
                warnings=trim.warnings,
            )

        self.sessions.set(conversation_id, history)
        await self.store.save(conversation_id, history)
        reply.advance(TurnState.PERSISTED)
        log.info(
            "turn_completed",
            history_turns=len(history),
            history_tokens=trim.history_tokens,
            removed_turns=trim.removed_turns,
            budget_exceeded=trim.budget_exceeded,
        )

        reply.advance(TurnState.IDLE)
        return reply
