import pytest
from pydantic import ValidationError

from llm_fallback.schemas import AutoFallbackSetting, FallbackPolicy, ResolveRequest


def test_fallback_policy_requires_model():
    with pytest.raises(ValidationError):
        FallbackPolicy(model="")


def test_fallback_policy_rejects_unknown_action():
    with pytest.raises(ValidationError):
        FallbackPolicy(model="flash", action="loud")


def test_fallback_policy_is_immutable():
    policy = FallbackPolicy(model="flash")
    with pytest.raises(ValidationError):
        policy.model = "pro"


def test_auto_fallback_setting_rejects_unknown_type():
    with pytest.raises(ValidationError):
        AutoFallbackSetting(enabled=True, type="carrier-pigeon")


def test_resolve_request_requires_choice():
    with pytest.raises(ValidationError):
        ResolveRequest(choice="")
