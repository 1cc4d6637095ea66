from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from prometheus_client import Counter

from llm_fallback.auto_fallback import (
    AUTH_TYPE_FOR_FALLBACK,
    AuthSwitcher,
    has_alternate_backend,
    has_credentials,
    has_secondary_key,
)
from llm_fallback.classification import classify_failure_kind
from llm_fallback.config import AUTO_FALLBACK_SETTING_KEY
from llm_fallback.intents import parse_intent
from llm_fallback.messages import build_fallback_message, dialog_choices
from llm_fallback.schemas import AutoFallbackSetting, AutoFallbackStatus, DialogChoice, FailureKind, FallbackIntent
from llm_fallback.settings_store import SettingScope, SettingsStore

logger = logging.getLogger("llm-fallback")

FALLBACK_PROMPTS_TOTAL = Counter(
    "fallback_prompts_total",
    "Interactive fallback prompts by outcome",
    ["outcome"],
)


class GateState(str, Enum):
    IDLE = "idle"
    AWAITING_CHOICE = "awaiting_choice"


@dataclass
class PendingFallbackRequest:
    failed_model: str
    fallback_model: str
    failure_kind: FailureKind = FailureKind.CAPACITY
    message: str = ""
    choices: list[DialogChoice] = field(default_factory=list)
    future: asyncio.Future | None = field(default=None, repr=False)


class FallbackPrompter(ABC):
    @abstractmethod
    async def prompt(
        self,
        failed_model: str,
        fallback_model: str,
        error: object,
        auto_fallback_status: AutoFallbackStatus,
    ) -> FallbackIntent | str | None:
        raise NotImplementedError


class InteractiveDecisionGate:
    """Holds at most one fallback question for the user at a time.

    A failure that arrives while a question is outstanding gets ``stop``
    straight away; the outstanding request is left untouched.
    """

    def __init__(self, on_request: Callable[[PendingFallbackRequest], None] | None = None) -> None:
        self._on_request = on_request
        self._state = GateState.IDLE
        self._pending: PendingFallbackRequest | None = None
        self._claimed = False

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def pending(self) -> PendingFallbackRequest | None:
        if self._claimed:
            return None
        return self._pending

    async def request(
        self,
        failed_model: str,
        fallback_model: str,
        failure_kind: FailureKind = FailureKind.CAPACITY,
        message: str = "",
        choices: list[DialogChoice] | None = None,
    ) -> FallbackIntent:
        if self._state == GateState.AWAITING_CHOICE:
            FALLBACK_PROMPTS_TOTAL.labels("superseded").inc()
            return FallbackIntent.STOP

        pending = PendingFallbackRequest(
            failed_model=failed_model,
            fallback_model=fallback_model,
            failure_kind=failure_kind,
            message=message,
            choices=list(choices or []),
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending = pending
        self._state = GateState.AWAITING_CHOICE
        FALLBACK_PROMPTS_TOTAL.labels("opened").inc()

        if self._on_request is not None:
            self._on_request(pending)

        try:
            return await pending.future
        except asyncio.CancelledError:
            if self._pending is pending:
                self._clear()
            raise

    def resolve(self, intent: FallbackIntent | str) -> bool:
        pending = self.claim()
        if pending is None:
            return False
        self.complete(pending, intent)
        return True

    def claim(self) -> PendingFallbackRequest | None:
        """Take the pending request so no other caller can resolve it.

        The gate stays closed to new requests until ``complete`` is called.
        """
        if self._pending is None or self._claimed:
            return None
        self._claimed = True
        return self._pending

    def complete(self, pending: PendingFallbackRequest, intent: FallbackIntent | str) -> None:
        if self._pending is pending:
            self._clear()
        FALLBACK_PROMPTS_TOTAL.labels("resolved").inc()

        future = pending.future
        loop = future.get_loop()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            _complete(future, intent)
        else:
            loop.call_soon_threadsafe(_complete, future, intent)

    def _clear(self) -> None:
        self._pending = None
        self._claimed = False
        self._state = GateState.IDLE


def _complete(future: asyncio.Future, intent: FallbackIntent | str) -> None:
    if not future.done():
        future.set_result(intent)


class GatePrompter(FallbackPrompter):
    def __init__(
        self,
        gate: InteractiveDecisionGate,
        is_paid_tier: bool = False,
        environ: Mapping[str, str] | None = None,
        on_notice: Callable[[str], None] | None = None,
    ) -> None:
        self.gate = gate
        self.is_paid_tier = is_paid_tier
        self._on_notice = on_notice
        self._environ = environ if environ is not None else os.environ

    async def prompt(
        self,
        failed_model: str,
        fallback_model: str,
        error: object,
        auto_fallback_status: AutoFallbackStatus,
    ) -> FallbackIntent:
        failure_kind = classify_failure_kind(error)
        message = build_fallback_message(
            failed_model, fallback_model, failure_kind, self.is_paid_tier, auto_fallback_status
        )
        if auto_fallback_status.status == "success":
            # the switch already happened, so there is nothing to ask
            if self._on_notice is not None:
                self._on_notice(message)
            return FallbackIntent.RETRY_ONCE

        choices = dialog_choices(
            failed_model,
            fallback_model,
            failure_kind,
            self.is_paid_tier,
            has_secondary_key=has_secondary_key(self._environ),
            has_alternate_backend=has_alternate_backend(self._environ),
        )
        return await self.gate.request(failed_model, fallback_model, failure_kind, message, choices)


class FallbackChoiceHandler:
    """Turns a choice made in the UI into the intent that resolves the gate."""

    def __init__(
        self,
        gate: InteractiveDecisionGate,
        settings_store: SettingsStore | None = None,
        auth_switcher: AuthSwitcher | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.gate = gate
        self._settings_store = settings_store
        self._auth_switcher = auth_switcher
        self._environ = environ if environ is not None else os.environ

    async def handle_choice(self, choice: str) -> FallbackIntent | None:
        """Resolve the pending request; ``None`` when nothing is pending."""
        if choice in AUTH_TYPE_FOR_FALLBACK:
            intent = FallbackIntent.RETRY_ONCE
        else:
            intent = parse_intent(choice)

        pending = self.gate.claim()
        if pending is None:
            return None
        try:
            if choice in AUTH_TYPE_FOR_FALLBACK:
                await self._enable_auto_fallback(choice)
        finally:
            self.gate.complete(pending, intent)
        return intent

    async def _enable_auto_fallback(self, fallback_type: str) -> None:
        setting = AutoFallbackSetting(enabled=True, type=fallback_type)
        if self._settings_store is not None:
            self._settings_store.set_value(SettingScope.USER, AUTO_FALLBACK_SETTING_KEY, setting.model_dump())

        if not has_credentials(setting.type, self._environ):
            logger.info(json.dumps({"message": "auto_fallback_saved_for_future_sessions", "auth_type": fallback_type}))
            return
        if self._auth_switcher is None:
            return
        try:
            await self._auth_switcher.refresh_auth(AUTH_TYPE_FOR_FALLBACK[fallback_type])
        except Exception as exc:
            logger.warning(
                json.dumps({"message": "auth_switch_failed", "auth_type": fallback_type, "error": str(exc)})
            )
            return
        logger.info(json.dumps({"message": "auth_switched", "auth_type": fallback_type}))
