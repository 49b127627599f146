"""
Bounded retry decisions for per-target builds.

Only transient failures (network blips, an unavailable Docker daemon) are
retried. Deterministic build failures never are: running the same commit
through the same compiler twice yields the same error.

Delays grow exponentially from ``backoff_seconds`` and are capped at
``backoff_max_seconds``. Decisions are logged with ``structlog``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from dsr.config.schema import EngineConfig


class RetryAction(StrEnum):
    RETRY = "retry"
    STOP = "stop"


@dataclass(frozen=True, slots=True)
class RetryDecision:
    action: RetryAction
    attempt: int
    delay_seconds: float
    reason: str

    @property
    def should_retry(self) -> bool:
        return self.action is RetryAction.RETRY

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "attempt": self.attempt,
            "delay_seconds": self.delay_seconds,
            "reason": self.reason,
        }


class RetryPolicy:
    def __init__(
        self,
        *,
        max_attempts: int,
        backoff_seconds: float,
        backoff_max_seconds: float,
        logger: Any | None = None,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if backoff_seconds < 0 or backoff_max_seconds < 0:
            raise ValueError("backoff values must be >= 0")
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_config(cls, config: EngineConfig, *, logger: Any | None = None) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            backoff_seconds=config.retry_backoff_seconds,
            backoff_max_seconds=config.retry_backoff_max_seconds,
            logger=logger,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""

        if attempt <= 0:
            raise ValueError("attempt must be > 0")
        return min(self.backoff_max_seconds, self.backoff_seconds * (2 ** (attempt - 1)))

    def decide(self, *, attempt: int, transient: bool, target: str = "") -> RetryDecision:
        if not transient:
            decision = RetryDecision(RetryAction.STOP, attempt, 0.0, "deterministic_failure")
        elif attempt >= self.max_attempts:
            decision = RetryDecision(RetryAction.STOP, attempt, 0.0, "attempts_exhausted")
        else:
            decision = RetryDecision(
                RetryAction.RETRY, attempt, self.delay_for(attempt), "transient_failure"
            )
        self._logger.info("retry_decision", target=target, **decision.to_dict())
        return decision


__all__ = ["RetryAction", "RetryDecision", "RetryPolicy"]
