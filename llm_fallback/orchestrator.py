from __future__ import annotations

import json
import logging
import webbrowser
from collections.abc import Mapping
from typing import Callable

from opentelemetry import trace
from prometheus_client import Counter
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from llm_fallback.auto_fallback import AuthSwitcher, AutoFallbackResolver
from llm_fallback.availability import AvailabilityContext, ModelAvailabilityService, apply_availability_transition
from llm_fallback.classification import classify_failure_kind, retry_delay_seconds
from llm_fallback.config import AUTO_FALLBACK_SETTING_KEY
from llm_fallback.gate import FallbackPrompter
from llm_fallback.intents import IntentProcessor
from llm_fallback.policy import (
    build_fallback_policy_context,
    load_policy_chain,
    resolve_policy_action,
    resolve_policy_chain,
)
from llm_fallback.schemas import AutoFallbackSetting, FailureKind, FallbackIntent, FallbackPolicy
from llm_fallback.session import AuthType, SessionState
from llm_fallback.settings_store import SettingsStore

logger = logging.getLogger("llm-fallback")
tracer = trace.get_tracer("llm-fallback")

FALLBACK_TOTAL = Counter(
    "fallback_total",
    "Fallback decisions by failure kind and outcome",
    ["failure_kind", "outcome"],
)

RETRY_INTENTS = (FallbackIntent.RETRY_ONCE, FallbackIntent.RETRY_ALWAYS)


class FallbackOrchestrator:
    """Decides what happens after a call to the primary model fails.

    ``handle_fallback`` returns ``True`` to retry now, ``False`` to stop
    retrying and ``None`` when fallback does not apply, in which case the
    caller should surface the original error.
    """

    def __init__(
        self,
        session: SessionState,
        availability: ModelAvailabilityService | None = None,
        prompter: FallbackPrompter | None = None,
        settings_store: SettingsStore | None = None,
        auth_switcher: AuthSwitcher | None = None,
        policy_chain: list[dict] | list[FallbackPolicy] | None = None,
        environ: Mapping[str, str] | None = None,
        open_url: Callable[[str], object] = webbrowser.open,
    ) -> None:
        self.session = session
        self.availability = availability if availability is not None else ModelAvailabilityService()
        self.prompter = prompter
        self.settings_store = settings_store
        self.auto_fallback = AutoFallbackResolver(auth_switcher, environ)
        self.intents = IntentProcessor(session, open_url=open_url)
        self._policy_chain = policy_chain

    def auto_fallback_setting(self) -> AutoFallbackSetting:
        if self.settings_store is None:
            return AutoFallbackSetting()
        try:
            raw = self.settings_store.get_value(AUTO_FALLBACK_SETTING_KEY)
        except SQLAlchemyError as exc:
            logger.warning(json.dumps({"message": "auto_fallback_setting_unreadable", "error": str(exc)}))
            return AutoFallbackSetting()
        if raw is None:
            return AutoFallbackSetting()
        try:
            return AutoFallbackSetting.model_validate(raw)
        except ValidationError:
            logger.warning(json.dumps({"message": "auto_fallback_setting_invalid"}))
            return AutoFallbackSetting()

    def policy_chain(self) -> list[FallbackPolicy]:
        if self._policy_chain is not None:
            return resolve_policy_chain(self._policy_chain)
        return resolve_policy_chain(load_policy_chain())

    async def handle_fallback(self, failed_model: str, auth_type: str | None, error: object = None) -> bool | None:
        with tracer.start_as_current_span("handle_fallback") as span:
            span.set_attribute("fallback.failed_model", failed_model)
            failure_kind = classify_failure_kind(error)
            span.set_attribute("fallback.failure_kind", failure_kind.value)

            result = await self._handle(failed_model, auth_type, error, failure_kind)

            outcome = "none" if result is None else ("retry" if result else "stop")
            span.set_attribute("fallback.outcome", outcome)
            FALLBACK_TOTAL.labels(failure_kind.value, outcome).inc()
            logger.info(
                json.dumps(
                    {
                        "message": "fallback_handled",
                        "failed_model": failed_model,
                        "failure_kind": failure_kind.value,
                        "outcome": outcome,
                        "active_model": self.session.active_model_override,
                    }
                )
            )
            return result

    async def _handle(
        self,
        failed_model: str,
        auth_type: str | None,
        error: object,
        failure_kind: FailureKind,
    ) -> bool | None:
        if auth_type != AuthType.OAUTH:
            return None

        self.intents.record_failure(failure_kind)
        auto_status = await self.auto_fallback.resolve(self.auto_fallback_setting())

        chain = self.policy_chain()
        context = build_fallback_policy_context(chain, failed_model)
        reset_after_s = retry_delay_seconds(error)

        def get_availability_context() -> AvailabilityContext | None:
            if context.failed_policy is None:
                return None
            return AvailabilityContext(service=self.availability, policy=context.failed_policy)

        if not chain:
            fallback_model = failed_model
        else:
            selection = self.availability.select_first_available([p.model for p in context.candidates])
            last_resort = next((p for p in context.candidates if p.is_last_resort), None)
            selected_model = selection.selected_model
            if selected_model is None and last_resort is not None:
                selected_model = last_resort.model
            selected_policy = next((p for p in context.candidates if p.model == selected_model), None)

            if selected_model is None or selected_model == failed_model or selected_policy is None:
                # a successful auth switch still goes through the prompter so the
                # user sees it, and the retry stays on the same model
                if auto_status.status != "success":
                    return None
                fallback_model = failed_model
            else:
                fallback_model = selected_model
                if resolve_policy_action(failure_kind, selected_policy) == "silent":
                    apply_availability_transition(get_availability_context, failure_kind, reset_after_s)
                    return await self.intents.process(FallbackIntent.RETRY_ALWAYS, fallback_model)

        if self.prompter is None:
            return None

        try:
            intent = await self.prompter.prompt(failed_model, fallback_model, error, auto_status)
            # stop/retry_later keep the failed model's state so it can be tried again later
            if intent in RETRY_INTENTS:
                apply_availability_transition(get_availability_context, failure_kind, reset_after_s)
            return await self.intents.process(intent, fallback_model)
        except Exception:
            logger.exception(
                json.dumps(
                    {
                        "message": "fallback_prompter_failed",
                        "failed_model": failed_model,
                        "fallback_model": fallback_model,
                    }
                )
            )
            return None
