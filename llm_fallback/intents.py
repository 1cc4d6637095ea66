from __future__ import annotations

import asyncio
import json
import logging
import webbrowser
from typing import Callable

from llm_fallback.config import UPGRADE_URL
from llm_fallback.schemas import FailureKind, FallbackIntent
from llm_fallback.session import SessionState

logger = logging.getLogger("llm-fallback")


class UnexpectedIntentError(ValueError):
    pass


def parse_intent(value: object) -> FallbackIntent:
    if isinstance(value, FallbackIntent):
        return value
    if isinstance(value, str):
        try:
            return FallbackIntent(value)
        except ValueError:
            pass
    raise UnexpectedIntentError(f'Unexpected fallback intent received from prompter: "{value}"')


class IntentProcessor:
    """Applies a resolved intent to the session and decides whether to retry."""

    def __init__(
        self,
        session: SessionState,
        open_url: Callable[[str], object] = webbrowser.open,
        upgrade_url: str = UPGRADE_URL,
    ) -> None:
        self.session = session
        self._open_url = open_url
        self._upgrade_url = upgrade_url

    def record_failure(self, failure_kind: FailureKind) -> None:
        if failure_kind in (FailureKind.TERMINAL_QUOTA, FailureKind.RETRYABLE_QUOTA):
            self.session.quota_error_occurred = True

    async def process(self, intent: object, fallback_model: str) -> bool:
        intent = parse_intent(intent)

        if intent == FallbackIntent.RETRY_ALWAYS:
            self.session.in_fallback_mode = True
            self.session.active_model_override = fallback_model
            logger.info(json.dumps({"message": "fallback_model_activated", "model": fallback_model}))
            return True
        if intent == FallbackIntent.RETRY_ONCE:
            # routing for this turn follows the availability service
            return True
        if intent in (FallbackIntent.STOP, FallbackIntent.RETRY_LATER, FallbackIntent.AUTH):
            return False
        if intent == FallbackIntent.UPGRADE:
            await self._open_upgrade_link()
            return False

        raise UnexpectedIntentError(f'Unhandled fallback intent: "{intent}"')

    async def _open_upgrade_link(self) -> None:
        try:
            await asyncio.to_thread(self._open_url, self._upgrade_url)
        except Exception as exc:
            logger.warning(
                json.dumps({"message": "upgrade_link_failed", "url": self._upgrade_url, "error": str(exc)})
            )
