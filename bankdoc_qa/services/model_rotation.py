# =============================================================================
# Model Rotation — Priority List with Per-Model Request Budgets
# =============================================================================
#
# Operators configure an ordered list of completion models (LLM_MODELS).
# Each answer asks the rotation for a model: the highest-priority model
# whose per-minute and per-day budgets are not exhausted wins. The chosen
# priority is passed on to usage accounting.
#
# DESIGN DECISION: Sliding windows over fixed windows. Requests are kept
# as timestamps and pruned on each check, so a burst at a minute
# boundary cannot double the budget.
#
# DESIGN DECISION: When every model is exhausted the top-priority model
# is returned anyway. The provider's own 429 then flows through the
# retry policy instead of the request failing before it is sent.
#
# DESIGN DECISION: In-process state guarded by a threading.Lock. This
# budget is advisory (the provider enforces the real quota), so it does
# not need to be shared across workers.
# =============================================================================

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from bankdoc_qa.config import settings

logger = logging.getLogger(__name__)

MINUTE_SECONDS = 60
DAY_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class ModelLimits:
    """Request budget of one model. Lower priority number = preferred."""

    name: str
    rpm: int
    rpd: int
    priority: int


class ModelSelector(Protocol):
    """Opaque "pick a model" call used by the answer orchestrator."""

    def pick(self) -> tuple[str, int]:
        """Return (model name, priority)."""
        ...

    def record_request(self, model: str) -> None:
        ...


class ModelRotation:
    """
    In-memory model picker honouring rpm / rpd budgets.

    Args:
        models: Budgets in any order; sorted by priority on construction.
        clock: Returns the current time in seconds. Injected by tests.
    """

    def __init__(
        self,
        models: list[ModelLimits],
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not models:
            raise ValueError("ModelRotation needs at least one model")
        self._models = sorted(models, key=lambda m: m.priority)
        self._clock = clock
        self._lock = threading.Lock()
        self._requests: dict[str, deque[float]] = {
            m.name: deque() for m in self._models
        }

    def _prune(self, name: str, now: float) -> deque[float]:
        timestamps = self._requests[name]
        while timestamps and now - timestamps[0] >= DAY_SECONDS:
            timestamps.popleft()
        return timestamps

    def _counts(self, name: str, now: float) -> tuple[int, int]:
        timestamps = self._prune(name, now)
        per_minute = sum(1 for t in timestamps if now - t < MINUTE_SECONDS)
        return per_minute, len(timestamps)

    def _available(self, model: ModelLimits, now: float) -> bool:
        per_minute, per_day = self._counts(model.name, now)
        if per_minute >= model.rpm:
            logger.debug(
                "%s reached RPM limit (%d/%d)", model.name, per_minute, model.rpm,
            )
            return False
        if per_day >= model.rpd:
            logger.debug(
                "%s reached RPD limit (%d/%d)", model.name, per_day, model.rpd,
            )
            return False
        return True

    def pick(self) -> tuple[str, int]:
        """Highest-priority model with budget left, else the top model."""
        with self._lock:
            now = self._clock()
            for model in self._models:
                if self._available(model, now):
                    return model.name, model.priority

        top = self._models[0]
        logger.warning(
            "All %d models reached their limits; falling back to %s",
            len(self._models), top.name,
        )
        return top.name, top.priority

    def record_request(self, model: str) -> None:
        """Count one request against `model`. Unknown names are ignored."""
        with self._lock:
            if model not in self._requests:
                return
            now = self._clock()
            self._requests[model].append(now)
            per_minute, per_day = self._counts(model, now)

        logger.debug(
            "Model %s usage: %d req/min, %d req/day", model, per_minute, per_day,
        )

    def usage_stats(self) -> list[dict]:
        """Per-model usage snapshot for diagnostics."""
        stats: list[dict] = []
        with self._lock:
            now = self._clock()
            for model in self._models:
                per_minute, per_day = self._counts(model.name, now)
                stats.append({
                    "name": model.name,
                    "priority": model.priority,
                    "rpm": f"{per_minute}/{model.rpm}",
                    "rpd": f"{per_day}/{model.rpd}",
                    "rpm_percent": round(per_minute / model.rpm * 100, 1),
                    "rpd_percent": round(per_day / model.rpd * 100, 1),
                    "available": self._available(model, now),
                })
        return stats

    def reset(self) -> None:
        with self._lock:
            for timestamps in self._requests.values():
                timestamps.clear()


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_rotation: ModelRotation | None = None


def get_model_rotation() -> ModelRotation:
    """
    Build the rotation from LLM_MODELS (priority = position + 1).

    An empty list means a single-model rotation over LLM_MODEL.
    """
    global _rotation
    if _rotation is None:
        names = settings.llm_models or [settings.llm_model]
        _rotation = ModelRotation([
            ModelLimits(
                name=name,
                rpm=settings.llm_model_rpm,
                rpd=settings.llm_model_rpd,
                priority=index + 1,
            )
            for index, name in enumerate(names)
        ])
        logger.info("Model rotation initialised with %s", names)
    return _rotation
