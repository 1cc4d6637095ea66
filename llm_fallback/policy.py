from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from pydantic import TypeAdapter, ValidationError

from llm_fallback.config import DEFAULT_FLASH_MODEL, DEFAULT_PRO_MODEL, FALLBACK_CHAIN
from llm_fallback.schemas import FailureKind, FallbackPolicy, PolicyAction

logger = logging.getLogger("llm-fallback")

_CHAIN_ADAPTER = TypeAdapter(list[FallbackPolicy])


@dataclass(frozen=True)
class FallbackPolicyContext:
    failed_policy: FallbackPolicy | None
    candidates: list[FallbackPolicy]


def default_policy_chain() -> list[FallbackPolicy]:
    return [
        FallbackPolicy(model=DEFAULT_PRO_MODEL, action="prompt"),
        FallbackPolicy(model=DEFAULT_FLASH_MODEL, action="prompt", is_last_resort=True),
    ]


def load_policy_chain(raw: str | None = None) -> list[dict] | None:
    """Parse the configured chain from JSON; ``None`` means "use the default"."""
    text = FALLBACK_CHAIN if raw is None else raw
    if not text.strip():
        return None
    try:
        data = json.loads(text)
    except ValueError:
        logger.warning(json.dumps({"message": "fallback_chain_invalid_json"}))
        return None
    if not isinstance(data, list):
        logger.warning(json.dumps({"message": "fallback_chain_not_a_list"}))
        return None
    return data


def resolve_policy_chain(config_chain: list[dict] | list[FallbackPolicy] | None = None) -> list[FallbackPolicy]:
    if config_chain is None:
        return default_policy_chain()
    try:
        policies = _CHAIN_ADAPTER.validate_python(config_chain)
    except ValidationError as exc:
        logger.warning(json.dumps({"message": "fallback_chain_invalid", "errors": exc.error_count()}))
        return default_policy_chain()

    seen: set[str] = set()
    chain: list[FallbackPolicy] = []
    for policy in policies:
        if policy.model in seen:
            continue
        seen.add(policy.model)
        chain.append(policy)
    return chain


def build_fallback_policy_context(chain: list[FallbackPolicy], failed_model: str) -> FallbackPolicyContext:
    for index, policy in enumerate(chain):
        if policy.model == failed_model:
            return FallbackPolicyContext(failed_policy=policy, candidates=list(chain[index + 1 :]))
    return FallbackPolicyContext(failed_policy=None, candidates=list(chain))


def resolve_policy_action(failure_kind: FailureKind, policy: FallbackPolicy) -> PolicyAction:
    return policy.actions.get(failure_kind, policy.action)
