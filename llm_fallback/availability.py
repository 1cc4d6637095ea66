from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from prometheus_client import Counter

from llm_fallback.schemas import FailureKind, FallbackPolicy

logger = logging.getLogger("llm-fallback")

AVAILABILITY_TRANSITIONS_TOTAL = Counter(
    "availability_transitions_total",
    "Model availability transitions applied after a fallback",
    ["failure_kind"],
)

AVAILABLE = "available"
UNAVAILABLE_UNTIL = "unavailable-until"


@dataclass
class AvailabilityState:
    status: str = AVAILABLE
    reset_at: float | None = None
    reason: str | None = None


@dataclass(frozen=True)
class ModelSelection:
    selected_model: str | None = None
    skipped: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AvailabilityContext:
    service: "ModelAvailabilityService"
    policy: FallbackPolicy


class ModelAvailabilityService:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._states: dict[str, AvailabilityState] = {}

    def state(self, model: str) -> AvailabilityState:
        current = self._states.get(model)
        if current is None:
            current = AvailabilityState()
            self._states[model] = current
        if current.status == UNAVAILABLE_UNTIL and current.reset_at is not None:
            if self._clock() >= current.reset_at:
                current.status = AVAILABLE
                current.reset_at = None
                current.reason = None
        return current

    def is_available(self, model: str) -> bool:
        return self.state(model).status == AVAILABLE

    def select_first_available(self, models: list[str]) -> ModelSelection:
        skipped: list[str] = []
        for model in models:
            if self.is_available(model):
                return ModelSelection(selected_model=model, skipped=tuple(skipped))
            skipped.append(model)
        return ModelSelection(selected_model=None, skipped=tuple(skipped))

    def mark_terminal(self, model: str, reason: str, reset_after_s: float | None = None) -> AvailabilityState:
        current = self.state(model)
        if current.status == UNAVAILABLE_UNTIL:
            return current
        current.status = UNAVAILABLE_UNTIL
        current.reason = reason
        current.reset_at = None if reset_after_s is None else self._clock() + reset_after_s
        logger.info(
            json.dumps(
                {
                    "message": "model_unavailable",
                    "model": model,
                    "reason": reason,
                    "reset_at": current.reset_at,
                }
            )
        )
        return current

    def mark_healthy(self, model: str) -> None:
        self._states[model] = AvailabilityState()

    def snapshot(self) -> dict[str, AvailabilityState]:
        return {model: self.state(model) for model in list(self._states)}

    def reset(self) -> None:
        self._states.clear()


def apply_availability_transition(
    get_context: Callable[[], AvailabilityContext | None],
    failure_kind: FailureKind,
    reset_after_s: float | None = None,
) -> None:
    """Record the failed model's new availability once the user chose to retry.

    Only a terminal quota error changes state; transient and capacity errors
    leave the model available for the next attempt.
    """
    if failure_kind != FailureKind.TERMINAL_QUOTA:
        return
    context = get_context()
    if context is None:
        return
    context.service.mark_terminal(context.policy.model, "quota", reset_after_s)
    AVAILABILITY_TRANSITIONS_TOTAL.labels(failure_kind.value).inc()
