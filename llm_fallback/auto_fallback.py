from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping

from prometheus_client import Counter

from llm_fallback.config import (
    ALT_BACKEND_API_KEY_ENV,
    ALT_BACKEND_LOCATION_ENV,
    ALT_BACKEND_PROJECT_ENV,
    SECONDARY_API_KEY_ENV,
)
from llm_fallback.schemas import AutoFallbackSetting, AutoFallbackStatus, AutoFallbackType
from llm_fallback.session import AuthType

logger = logging.getLogger("llm-fallback")

AUTO_FALLBACK_TOTAL = Counter(
    "auto_fallback_total",
    "Automatic authentication fallback attempts",
    ["status"],
)

AUTH_TYPE_FOR_FALLBACK: dict[str, AuthType] = {
    "secondary-key": AuthType.API_KEY,
    "alternate-backend": AuthType.ALTERNATE_BACKEND,
}


class AuthSwitcher(ABC):
    @abstractmethod
    async def refresh_auth(self, auth_type: AuthType) -> None:
        raise NotImplementedError


class SessionAuthSwitcher(AuthSwitcher):
    """Tracks which auth method the session currently runs with."""

    def __init__(self, current: AuthType = AuthType.OAUTH) -> None:
        self.current = current

    async def refresh_auth(self, auth_type: AuthType) -> None:
        self.current = auth_type


def has_secondary_key(environ: Mapping[str, str]) -> bool:
    return bool(environ.get(SECONDARY_API_KEY_ENV))


def has_alternate_backend(environ: Mapping[str, str]) -> bool:
    if environ.get(ALT_BACKEND_API_KEY_ENV):
        return True
    return bool(environ.get(ALT_BACKEND_PROJECT_ENV) and environ.get(ALT_BACKEND_LOCATION_ENV))


def has_credentials(fallback_type: AutoFallbackType, environ: Mapping[str, str]) -> bool:
    if fallback_type == "secondary-key":
        return has_secondary_key(environ)
    return has_alternate_backend(environ)


class AutoFallbackResolver:
    def __init__(self, auth_switcher: AuthSwitcher | None, environ: Mapping[str, str] | None = None) -> None:
        self._auth_switcher = auth_switcher
        self._environ = environ if environ is not None else os.environ

    async def resolve(self, setting: AutoFallbackSetting) -> AutoFallbackStatus:
        status = await self._attempt(setting)
        AUTO_FALLBACK_TOTAL.labels(status.status).inc()
        return status

    async def _attempt(self, setting: AutoFallbackSetting) -> AutoFallbackStatus:
        if not setting.enabled or self._auth_switcher is None:
            return AutoFallbackStatus(status="not-attempted")

        if not has_credentials(setting.type, self._environ):
            return AutoFallbackStatus(status="missing-env-vars", auth_type=setting.type)

        try:
            await self._auth_switcher.refresh_auth(AUTH_TYPE_FOR_FALLBACK[setting.type])
        except Exception as exc:
            logger.warning(
                json.dumps(
                    {
                        "message": "auto_fallback_failed",
                        "auth_type": setting.type,
                        "error": str(exc),
                    }
                )
            )
            return AutoFallbackStatus(status="not-attempted")

        logger.info(json.dumps({"message": "auto_fallback_switched", "auth_type": setting.type}))
        return AutoFallbackStatus(status="success", auth_type=setting.type)
