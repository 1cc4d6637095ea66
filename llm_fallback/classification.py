from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping

import httpx

from llm_fallback.config import TERMINAL_RETRY_DELAY_S
from llm_fallback.schemas import FailureKind

logger = logging.getLogger("llm-fallback")

QUOTA_FAILURE_TYPE = "type.googleapis.com/google.rpc.QuotaFailure"
RETRY_INFO_TYPE = "type.googleapis.com/google.rpc.RetryInfo"
_DAILY_QUOTA = re.compile(r"per\s*day|daily", re.IGNORECASE)
_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s)?\s*$")


class TerminalQuotaError(RuntimeError):
    """Quota exhausted until a known reset time (e.g. a daily limit)."""

    def __init__(self, message: str, retry_delay_s: float | None = None) -> None:
        super().__init__(message)
        self.retry_delay_s = retry_delay_s


class RetryableQuotaError(RuntimeError):
    """Short-term quota or backoff condition expected to clear on its own."""

    def __init__(self, message: str, retry_delay_s: float | None = None) -> None:
        super().__init__(message)
        self.retry_delay_s = retry_delay_s


def classify_failure_kind(error: object) -> FailureKind:
    try:
        return _classify(error)
    except Exception:
        logger.debug(json.dumps({"message": "classification_failed", "error_type": type(error).__name__}))
        return FailureKind.CAPACITY


def retry_delay_seconds(error: object) -> float | None:
    try:
        if isinstance(error, (TerminalQuotaError, RetryableQuotaError)):
            return error.retry_delay_s
        body = _error_body(error)
        if body is None:
            return None
        return _retry_delay_from_details(body.get("details"))
    except Exception:
        return None


def _classify(error: object) -> FailureKind:
    if isinstance(error, TerminalQuotaError):
        return FailureKind.TERMINAL_QUOTA
    if isinstance(error, RetryableQuotaError):
        return FailureKind.RETRYABLE_QUOTA

    body = _error_body(error)
    if body is None or _status_code(error, body) != 429:
        return FailureKind.CAPACITY

    details = body.get("details")
    if _has_daily_quota_violation(details):
        return FailureKind.TERMINAL_QUOTA
    delay = _retry_delay_from_details(details)
    if delay is not None and delay > TERMINAL_RETRY_DELAY_S:
        return FailureKind.TERMINAL_QUOTA
    return FailureKind.RETRYABLE_QUOTA


def _error_body(error: object) -> Mapping | None:
    payload: object = error
    if isinstance(error, httpx.HTTPStatusError):
        try:
            payload = error.response.json()
        except ValueError:
            return {}
    if isinstance(payload, list) and payload:
        payload = payload[0]
    if not isinstance(payload, Mapping):
        return {} if isinstance(error, httpx.HTTPStatusError) else None
    inner = payload.get("error")
    if isinstance(inner, Mapping):
        return inner
    return {}


def _status_code(error: object, body: Mapping) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    code = body.get("code")
    if isinstance(code, int):
        return code
    if body.get("status") == "RESOURCE_EXHAUSTED":
        return 429
    return None


def _detail_entries(details: object, type_url: str) -> list[Mapping]:
    if not isinstance(details, list):
        return []
    return [d for d in details if isinstance(d, Mapping) and d.get("@type") == type_url]


def _has_daily_quota_violation(details: object) -> bool:
    for entry in _detail_entries(details, QUOTA_FAILURE_TYPE):
        violations = entry.get("violations") or []
        for violation in violations:
            if not isinstance(violation, Mapping):
                continue
            quota_id = str(violation.get("quotaId") or "")
            if _DAILY_QUOTA.search(quota_id):
                return True
    return False


def _retry_delay_from_details(details: object) -> float | None:
    for entry in _detail_entries(details, RETRY_INFO_TYPE):
        match = _DURATION.match(str(entry.get("retryDelay") or ""))
        if match is None:
            continue
        value = float(match.group(1))
        if match.group(2) == "ms":
            value /= 1000
        return value
    return None
