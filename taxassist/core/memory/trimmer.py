"""History trimmer: keeps a conversation inside the token budget.

Enforces ``system_tokens + user_tokens + history_tokens <= max_tokens`` by
dropping whole exchanges (user turn + assistant turn) from the front of the
history. Trimming is lazy: a history that already fits is returned as is.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from taxassist.core.memory.tokens import TokenCounter
from taxassist.core.types import Turn

logger = structlog.get_logger()

# Turns per exchange; the atomic trimming unit.
EXCHANGE_SIZE = 2


@dataclass
class TrimResult:
    """Outcome of one trim call."""

    history: list[Turn]
    total_tokens: int
    max_tokens: int
    removed_turns: int = 0
    history_tokens: int = 0
    system_tokens: int = 0
    user_tokens: int = 0
    # Removed exchanges that alone, with the fixed cost, were over the ceiling.
    oversized_exchanges: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def budget_exceeded(self) -> bool:
        """True when the minimal history does not fit, or an exchange never could."""
        return self.total_tokens > self.max_tokens or self.oversized_exchanges > 0

    @property
    def percentage_used(self) -> float:
        """Share of the budget in use (for logging only)."""
        if self.max_tokens <= 0:
            return 100.0
        return self.total_tokens / self.max_tokens * 100


class HistoryTrimmer:
    """Oldest-first, exchange-atomic history trimming."""

    def __init__(self, counter: TokenCounter, max_tokens: int) -> None:
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        self.counter = counter
        self.max_tokens = max_tokens

    def trim(
        self,
        history: list[Turn],
        system_tokens: int,
        user_tokens: int = 0,
    ) -> TrimResult:
        """Drop the oldest exchanges until the request fits the budget.

        Args:
            history: Chronological turns, index 0 oldest. Not mutated.
            system_tokens: Tokens used by the instruction preamble.
            user_tokens: Tokens of a turn not yet appended to ``history``.
                Pass 0 when the current turn is already part of the history,
                otherwise it is counted twice.

        Returns:
            A TrimResult. ``budget_exceeded`` is set when no further
            exchange can be removed and the total is still over the ceiling,
            or when a removed exchange was over the ceiling by itself
            (``oversized_exchanges``). The history outcome is the same in
            both cases; the flag only reports it.
        """
        if not history:
            return TrimResult(
                history=history,
                total_tokens=system_tokens + user_tokens,
                max_tokens=self.max_tokens,
                system_tokens=system_tokens,
                user_tokens=user_tokens,
            )

        per_turn = [self.counter.count_turn(t) for t in history]
        history_tokens = sum(per_turn)
        fixed = system_tokens + user_tokens
        total = fixed + history_tokens

        logger.info(
            "history_status",
            messages=len(history),
            history_tokens=history_tokens,
            total_tokens=total,
            max_tokens=self.max_tokens,
            percent_used=round(total / self.max_tokens * 100, 2),
            system_tokens=system_tokens,
            user_tokens=user_tokens,
        )

        if total <= self.max_tokens:
            return TrimResult(
                history=history,
                total_tokens=total,
                max_tokens=self.max_tokens,
                history_tokens=history_tokens,
                system_tokens=system_tokens,
                user_tokens=user_tokens,
            )

        logger.info(
            "history_trim_started",
            total_tokens=total,
            max_tokens=self.max_tokens,
            excess_tokens=total - self.max_tokens,
        )

        start = 0
        remaining = len(history)
        oversized = 0
        while total > self.max_tokens and remaining >= EXCHANGE_SIZE:
            removed_tokens = sum(per_turn[start:start + EXCHANGE_SIZE])
            if fixed + removed_tokens > self.max_tokens:
                oversized += 1
                logger.warning(
                    "history_budget_exceeded",
                    reason="exchange_larger_than_budget",
                    exchange_tokens=removed_tokens,
                    fixed_tokens=fixed,
                    max_tokens=self.max_tokens,
                )
            start += EXCHANGE_SIZE
            remaining -= EXCHANGE_SIZE
            history_tokens -= removed_tokens
            total = fixed + history_tokens
            logger.debug(
                "history_exchange_removed",
                removed_tokens=removed_tokens,
                removed_turns=start,
                history_tokens=history_tokens,
                total_tokens=total,
            )

        result = TrimResult(
            history=history[start:],
            total_tokens=total,
            max_tokens=self.max_tokens,
            removed_turns=start,
            history_tokens=history_tokens,
            system_tokens=system_tokens,
            user_tokens=user_tokens,
            oversized_exchanges=oversized,
        )

        logger.info(
            "history_trimmed",
            removed_turns=start,
            remaining_turns=len(result.history),
            history_tokens=history_tokens,
            total_tokens=total,
            max_tokens=self.max_tokens,
        )

        if oversized:
            result.warnings.append(
                f"{oversized} exchange(s) exceeded the token budget on their own "
                f"and were dropped from history"
            )

        if total > self.max_tokens:
            message = (
                f"History still exceeds the token budget after trimming "
                f"({total} > {self.max_tokens})"
            )
            result.warnings.append(message)
            logger.warning(
                "history_budget_exceeded",
                total_tokens=total,
                max_tokens=self.max_tokens,
                remaining_turns=len(result.history),
            )

        return result
