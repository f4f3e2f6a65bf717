"""Per-model call statistics used to order LLM models by reliability."""

import time
from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import Callable, Optional

from gateway.logging_config import get_logger
from gateway.models.timestamps import to_iso

logger = get_logger("model_stats")

MAX_ERROR_HISTORY = 10
PROVEN_MIN_CALLS = 5
PROVEN_MIN_SUCCESS_RATE = 70


@dataclass
class ModelCallStats:
    model: str
    total_calls: int = 0
    success_calls: int = 0
    failed_calls: int = 0
    total_response_time_ms: float = 0.0
    last_used_at: Optional[float] = None
    last_error: Optional[str] = None
    error_history: list[dict] = field(default_factory=list)

    @property
    def success_rate(self) -> int:
        if not self.total_calls:
            return 100
        return round(self.success_calls / self.total_calls * 100)

    @property
    def avg_response_time_ms(self) -> int:
        if not self.total_calls:
            return 0
        return round(self.total_response_time_ms / self.total_calls)

    def is_proven(self) -> bool:
        return self.total_calls >= PROVEN_MIN_CALLS and self.success_rate >= PROVEN_MIN_SUCCESS_RATE

    def to_dict(self) -> dict:
        return {
            "model": self.model,
            "total_calls": self.total_calls,
            "success_calls": self.success_calls,
            "failed_calls": self.failed_calls,
            "success_rate": self.success_rate,
            "avg_response_time_ms": self.avg_response_time_ms,
            "last_used_at": to_iso(self.last_used_at),
            "last_error": self.last_error,
            "error_history": list(self.error_history),
        }


def _compare(a: ModelCallStats, b: ModelCallStats) -> int:
    # Established, healthy models go before ones we know little about
    if a.is_proven() and b.total_calls < PROVEN_MIN_CALLS:
        return -1
    if b.is_proven() and a.total_calls < PROVEN_MIN_CALLS:
        return 1
    if a.success_rate != b.success_rate:
        return b.success_rate - a.success_rate
    return a.avg_response_time_ms - b.avg_response_time_ms


class ModelStats:
    def __init__(self, *, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._models: dict[str, ModelCallStats] = {}
        self.total_requests = 0

    def _ensure(self, model: str) -> ModelCallStats:
        stats = self._models.get(model)
        if stats is None:
            stats = ModelCallStats(model=model)
            self._models[model] = stats
        return stats

    def record_success(self, model: str, response_time_ms: float) -> None:
        stats = self._ensure(model)
        stats.total_calls += 1
        stats.success_calls += 1
        stats.total_response_time_ms += response_time_ms
        stats.last_used_at = self._clock()
        self.total_requests += 1
        logger.debug(
            "Model success recorded",
            extra={"context": {"model": model, "success_rate": stats.success_rate, "total_calls": stats.total_calls}},
        )

    def record_failure(self, model: str, error: str, response_time_ms: float) -> None:
        stats = self._ensure(model)
        stats.total_calls += 1
        stats.failed_calls += 1
        stats.total_response_time_ms += response_time_ms
        now = self._clock()
        stats.last_used_at = now
        stats.last_error = error
        stats.error_history.append({"timestamp": to_iso(now), "error": error})
        del stats.error_history[:-MAX_ERROR_HISTORY]
        self.total_requests += 1
        logger.warning(
            "Model failure recorded",
            extra={
                "context": {
                    "model": model,
                    "success_rate": stats.success_rate,
                    "failed_calls": stats.failed_calls,
                    "error": error[:100],
                }
            },
        )

    def get_model_priority(self, models: list[str]) -> list[str]:
        """Order ``models`` best first. Models without history count as 100% successful."""
        candidates = [self._models.get(model) or ModelCallStats(model=model) for model in models]
        ordered = sorted(candidates, key=cmp_to_key(_compare))
        return [stats.model for stats in ordered]

    def get_model_stats(self, model: str) -> Optional[ModelCallStats]:
        return self._models.get(model)

    def get_all_stats(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "models": {name: stats.to_dict() for name, stats in self._models.items()},
        }

    def reset(self) -> None:
        self._models.clear()
        self.total_requests = 0
