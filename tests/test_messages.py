from llm_fallback.messages import build_fallback_message, describe_auth, dialog_choices
from llm_fallback.schemas import AutoFallbackSetting, AutoFallbackStatus, FailureKind


def _values(choices):
    return [c.value for c in choices]


def test_same_model_only_offers_keep_trying():
    choices = dialog_choices("pro", "pro", FailureKind.TERMINAL_QUOTA, is_paid_tier=False)
    assert _values(choices) == ["retry_once", "retry_later"]


def test_terminal_quota_paid_tier_has_no_upgrade():
    choices = dialog_choices("pro", "flash", FailureKind.TERMINAL_QUOTA, is_paid_tier=True)
    assert _values(choices) == ["retry_always", "retry_later"]
    assert choices[0].label == "Switch to flash"


def test_capacity_offers_keep_trying():
    choices = dialog_choices("pro", "flash", FailureKind.CAPACITY, is_paid_tier=False)
    assert _values(choices) == ["retry_once", "retry_later"]


def test_credential_options_come_first():
    choices = dialog_choices(
        "pro",
        "flash",
        FailureKind.TERMINAL_QUOTA,
        is_paid_tier=True,
        has_secondary_key=True,
        has_alternate_backend=True,
    )
    assert _values(choices) == ["alternate-backend", "secondary-key", "retry_always", "retry_later"]


def test_messages_depend_on_failure_kind_and_tier():
    terminal_free = build_fallback_message("pro", "flash", FailureKind.TERMINAL_QUOTA, is_paid_tier=False)
    terminal_paid = build_fallback_message("pro", "flash", FailureKind.TERMINAL_QUOTA, is_paid_tier=True)
    throttled = build_fallback_message("pro", "flash", FailureKind.RETRYABLE_QUOTA, is_paid_tier=False)
    capacity = build_fallback_message("pro", "flash", FailureKind.CAPACITY, is_paid_tier=True)

    assert "daily pro quota limit" in terminal_free
    assert "upgrade" in terminal_free
    assert "paid API key" in terminal_paid
    assert "Automatically switching from pro to flash" in throttled
    assert "service outage" in capacity


def test_auto_fallback_success_message():
    message = build_fallback_message(
        "pro",
        "pro",
        FailureKind.TERMINAL_QUOTA,
        is_paid_tier=False,
        auto_status=AutoFallbackStatus(status="success", auth_type="secondary-key"),
    )
    assert message.startswith("⚡ Quota reached for pro. Switched to API key")


def test_describe_auth_with_active_fallback():
    setting = AutoFallbackSetting(enabled=True, type="secondary-key")
    assert describe_auth("oauth-personal", "api-key", setting) == (
        "Login with Google (fallback: API key) → active this session"
    )


def test_describe_auth_session_differs_without_fallback():
    assert describe_auth("oauth-personal", "alternate-backend", AutoFallbackSetting()) == (
        "Login with Google → session: Alternate backend"
    )
    assert describe_auth("oauth-personal", "oauth-personal", AutoFallbackSetting()) == "Login with Google"
