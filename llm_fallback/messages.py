from __future__ import annotations

from llm_fallback.config import API_KEY_DOCS_URL, PAID_KEY_URL, UPGRADE_URL
from llm_fallback.schemas import AutoFallbackSetting, AutoFallbackStatus, DialogChoice, FailureKind

AUTH_LABELS = {
    "oauth-personal": "Login with Google",
    "api-key": "API key",
    "secondary-key": "API key",
    "alternate-backend": "Alternate backend",
}


def auth_label(auth_type: str) -> str:
    return AUTH_LABELS.get(auth_type, auth_type)


def build_fallback_message(
    failed_model: str,
    fallback_model: str,
    failure_kind: FailureKind,
    is_paid_tier: bool,
    auto_status: AutoFallbackStatus | None = None,
) -> str:
    if auto_status is not None and auto_status.status == "success":
        return (
            f"⚡ Quota reached for {failed_model}. Switched to {auth_label(auto_status.auth_type or '')} "
            "authentication for this session."
        )

    if failure_kind == FailureKind.TERMINAL_QUOTA:
        lines = [
            f"⚡ You have reached your daily {failed_model} quota limit.",
            "⚡ You can choose to authenticate with a paid API key or continue with the fallback model.",
        ]
        if is_paid_tier:
            lines.append(
                f"⚡ To continue accessing the {failed_model} model today, consider using /auth to switch "
                f"to using a paid API key from {PAID_KEY_URL}"
            )
        else:
            lines.extend(
                [
                    f"⚡ To increase your limits, upgrade to a plan with higher limits at {UPGRADE_URL}",
                    f"⚡ Or you can utilize an API key. See: {API_KEY_DOCS_URL}",
                    "⚡ You can switch authentication methods by typing /auth",
                ]
            )
    elif failure_kind == FailureKind.RETRYABLE_QUOTA:
        lines = [
            f"⚡ Your requests are being throttled right now due to server being at capacity for {failed_model}.",
            f"⚡ Automatically switching from {failed_model} to {fallback_model} for the remainder of this session.",
        ]
        if is_paid_tier:
            lines.append(
                f"⚡ To continue accessing the {failed_model} model, retry your request after some time "
                f"or consider using /auth to switch to using a paid API key from {PAID_KEY_URL}"
            )
        else:
            lines.extend(
                [
                    "⚡ Retry your requests after some time. Otherwise consider upgrading to a plan with "
                    f"higher limits at {UPGRADE_URL}",
                    "⚡ You can switch authentication methods by typing /auth",
                ]
            )
    else:
        lines = [
            f"⚡ Automatically switching from {failed_model} to {fallback_model} for faster responses "
            "for the remainder of this session.",
            f"⚡ Your requests are being throttled temporarily due to server being at capacity for {failed_model} "
            "or there is a service outage.",
        ]
        if is_paid_tier:
            lines.append(
                f"⚡ To continue accessing the {failed_model} model, you can retry your request after some time "
                f"or consider using /auth to switch to using a paid API key from {PAID_KEY_URL}"
            )
        else:
            lines.extend(
                [
                    "⚡ To avoid being throttled, you can retry your request after some time or upgrade to a plan "
                    f"with higher limits at {UPGRADE_URL}",
                    f"⚡ Or you can utilize an API key. See: {API_KEY_DOCS_URL}",
                    "⚡ You can switch authentication methods by typing /auth",
                ]
            )
    return "\n".join(lines)


def dialog_choices(
    failed_model: str,
    fallback_model: str,
    failure_kind: FailureKind,
    is_paid_tier: bool,
    has_secondary_key: bool = False,
    has_alternate_backend: bool = False,
) -> list[DialogChoice]:
    """Options offered to the user, most specific first."""
    if failed_model == fallback_model:
        choices = [
            DialogChoice(label="Keep trying", value="retry_once"),
            DialogChoice(label="Stop", value="retry_later"),
        ]
    elif failure_kind == FailureKind.TERMINAL_QUOTA and is_paid_tier:
        choices = [
            DialogChoice(label=f"Switch to {fallback_model}", value="retry_always"),
            DialogChoice(label="Stop", value="retry_later"),
        ]
    elif failure_kind == FailureKind.TERMINAL_QUOTA:
        choices = [
            DialogChoice(label=f"Switch to {fallback_model}", value="retry_always"),
            DialogChoice(label="Upgrade for higher limits", value="upgrade"),
            DialogChoice(label="Stop", value="retry_later"),
        ]
    else:
        choices = [
            DialogChoice(label="Keep trying", value="retry_once"),
            DialogChoice(label="Stop", value="retry_later"),
        ]

    if has_secondary_key:
        choices.insert(0, DialogChoice(label="Always fallback to API key", value="secondary-key"))
    if has_alternate_backend:
        choices.insert(0, DialogChoice(label="Always fallback to alternate backend", value="alternate-backend"))
    return choices


def describe_auth(
    settings_auth_type: str | None,
    current_auth_type: str | None,
    auto_fallback: AutoFallbackSetting,
) -> str:
    parts: list[str] = []
    if settings_auth_type:
        parts.append(auth_label(settings_auth_type))

    if auto_fallback.enabled:
        parts.append(f"(fallback: {auth_label(auto_fallback.type)})")
        if current_auth_type and auth_label(current_auth_type) == auth_label(auto_fallback.type):
            parts.append("→ active this session")
    elif settings_auth_type and current_auth_type and auth_label(settings_auth_type) != auth_label(current_auth_type):
        parts.append(f"→ session: {auth_label(current_auth_type)}")

    return " ".join(parts)
