from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

PolicyAction = Literal["silent", "prompt"]
AutoFallbackType = Literal["secondary-key", "alternate-backend"]


class FailureKind(str, Enum):
    TERMINAL_QUOTA = "terminal_quota"
    RETRYABLE_QUOTA = "retryable_quota"
    CAPACITY = "capacity"


class FallbackIntent(str, Enum):
    RETRY_ONCE = "retry_once"
    RETRY_ALWAYS = "retry_always"
    RETRY_LATER = "retry_later"
    STOP = "stop"
    UPGRADE = "upgrade"
    AUTH = "auth"


class FallbackPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str = Field(min_length=1)
    is_last_resort: bool = False
    action: PolicyAction = "prompt"
    actions: dict[FailureKind, PolicyAction] = Field(default_factory=dict)


class AutoFallbackSetting(BaseModel):
    enabled: bool = False
    type: AutoFallbackType = "secondary-key"


class AutoFallbackStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["not-attempted", "success", "missing-env-vars"] = "not-attempted"
    auth_type: AutoFallbackType | None = None


class DialogChoice(BaseModel):
    label: str
    value: str


class PendingRequestResponse(BaseModel):
    failed_model: str
    fallback_model: str
    failure_kind: FailureKind
    message: str
    choices: list[DialogChoice]


class PendingStatusResponse(BaseModel):
    pending: PendingRequestResponse | None = None


class ResolveRequest(BaseModel):
    choice: str = Field(min_length=1)


class ResolveResponse(BaseModel):
    resolved: bool
    intent: FallbackIntent


class AvailabilityEntry(BaseModel):
    model: str
    status: Literal["available", "unavailable-until"]
    reset_at: float | None = None
    reason: str | None = None


class AvailabilityResponse(BaseModel):
    models: list[AvailabilityEntry]


class SessionResponse(BaseModel):
    in_fallback_mode: bool
    active_model_override: str | None
    quota_error_occurred: bool
    auth: str
