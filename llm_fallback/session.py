from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AuthType(str, Enum):
    OAUTH = "oauth-personal"
    API_KEY = "api-key"
    ALTERNATE_BACKEND = "alternate-backend"


@dataclass
class SessionState:
    """Fallback state shared by every request issued in one session.

    Only the intent processor writes to it; request-building code reads
    ``effective_model`` to decide which model the next call goes to.
    """

    in_fallback_mode: bool = False
    active_model_override: str | None = None
    quota_error_occurred: bool = False

    def effective_model(self, requested: str) -> str:
        if self.active_model_override:
            return self.active_model_override
        return requested

    def as_dict(self) -> dict:
        return {
            "in_fallback_mode": self.in_fallback_mode,
            "active_model_override": self.active_model_override,
            "quota_error_occurred": self.quota_error_occurred,
        }
