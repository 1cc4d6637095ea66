import asyncio
import threading

import pytest

from llm_fallback.auto_fallback import SessionAuthSwitcher
from llm_fallback.classification import TerminalQuotaError
from llm_fallback.gate import FallbackChoiceHandler, GatePrompter, GateState, InteractiveDecisionGate
from llm_fallback.intents import UnexpectedIntentError
from llm_fallback.schemas import AutoFallbackStatus, FailureKind, FallbackIntent
from llm_fallback.session import AuthType
from llm_fallback.settings_store import SettingScope


class MemorySettings:
    def __init__(self) -> None:
        self.values = {}

    def set_value(self, scope, key, value):
        self.values[(scope, key)] = value

    def get_value(self, key, default=None):
        return self.values.get((SettingScope.USER, key), default)


async def _wait_for_pending(gate: InteractiveDecisionGate) -> None:
    for _ in range(100):
        if gate.pending is not None:
            return
        await asyncio.sleep(0)
    raise AssertionError("gate never opened")


def test_resolve_unblocks_waiting_request():
    seen = []
    gate = InteractiveDecisionGate(on_request=seen.append)

    async def scenario():
        task = asyncio.create_task(gate.request("pro", "flash", FailureKind.TERMINAL_QUOTA, "msg"))
        await _wait_for_pending(gate)
        assert gate.state == GateState.AWAITING_CHOICE
        assert gate.resolve(FallbackIntent.RETRY_ALWAYS) is True
        return await task

    assert asyncio.run(scenario()) == FallbackIntent.RETRY_ALWAYS
    assert gate.state == GateState.IDLE
    assert gate.pending is None
    assert [r.failed_model for r in seen] == ["pro"]


def test_second_request_while_pending_returns_stop():
    gate = InteractiveDecisionGate()

    async def scenario():
        first = asyncio.create_task(gate.request("pro", "flash"))
        await _wait_for_pending(gate)
        original = gate.pending

        second = await gate.request("pro", "lite")

        assert second == FallbackIntent.STOP
        assert gate.pending is original
        assert gate.pending.fallback_model == "flash"
        gate.resolve(FallbackIntent.RETRY_ONCE)
        return await first

    assert asyncio.run(scenario()) == FallbackIntent.RETRY_ONCE


def test_resolve_without_pending_request():
    gate = InteractiveDecisionGate()
    assert gate.resolve(FallbackIntent.STOP) is False


def test_cancelled_request_clears_gate():
    gate = InteractiveDecisionGate()

    async def scenario():
        task = asyncio.create_task(gate.request("pro", "flash"))
        await _wait_for_pending(gate)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert gate.state == GateState.IDLE


def test_prompter_reports_auto_fallback_success_without_opening_gate():
    opened = []
    notices = []
    gate = InteractiveDecisionGate(on_request=opened.append)
    prompter = GatePrompter(gate, environ={}, on_notice=notices.append)
    status = AutoFallbackStatus(status="success", auth_type="secondary-key")

    intent = asyncio.run(prompter.prompt("pro", "pro", TerminalQuotaError("daily"), status))

    assert intent == FallbackIntent.RETRY_ONCE
    assert gate.pending is None
    assert gate.state == GateState.IDLE
    assert opened == []
    assert notices == ["⚡ Quota reached for pro. Switched to API key authentication for this session."]


def test_prompter_opens_gate_with_message_and_choices():
    gate = InteractiveDecisionGate()
    prompter = GatePrompter(gate, is_paid_tier=False, environ={"SECONDARY_API_KEY": "k"})

    async def scenario():
        task = asyncio.create_task(
            prompter.prompt("pro", "flash", TerminalQuotaError("daily"), AutoFallbackStatus())
        )
        await _wait_for_pending(gate)
        pending = gate.pending
        gate.resolve("retry_always")
        return pending, await task

    pending, intent = asyncio.run(scenario())

    assert intent == "retry_always"
    assert pending.failure_kind == FailureKind.TERMINAL_QUOTA
    assert "daily pro quota limit" in pending.message
    assert [c.value for c in pending.choices] == ["secondary-key", "retry_always", "upgrade", "retry_later"]


def test_choice_handler_passes_intents_through():
    gate = InteractiveDecisionGate()
    handler = FallbackChoiceHandler(gate, environ={})

    async def scenario():
        task = asyncio.create_task(gate.request("pro", "flash"))
        await _wait_for_pending(gate)
        resolved = await handler.handle_choice("retry_later")
        return resolved, await task

    assert asyncio.run(scenario()) == (FallbackIntent.RETRY_LATER, FallbackIntent.RETRY_LATER)


def test_choice_handler_persists_auto_fallback_and_switches_auth():
    gate = InteractiveDecisionGate()
    settings = MemorySettings()
    switcher = SessionAuthSwitcher()
    handler = FallbackChoiceHandler(gate, settings, switcher, environ={"SECONDARY_API_KEY": "k"})

    async def scenario():
        task = asyncio.create_task(gate.request("pro", "flash"))
        await _wait_for_pending(gate)
        await handler.handle_choice("secondary-key")
        return await task

    assert asyncio.run(scenario()) == FallbackIntent.RETRY_ONCE
    assert settings.values[(SettingScope.USER, "security.auth.autoFallback")] == {
        "enabled": True,
        "type": "secondary-key",
    }
    assert switcher.current == AuthType.API_KEY


def test_choice_handler_saves_setting_without_credentials():
    gate = InteractiveDecisionGate()
    settings = MemorySettings()
    switcher = SessionAuthSwitcher()
    handler = FallbackChoiceHandler(gate, settings, switcher, environ={})

    async def scenario():
        task = asyncio.create_task(gate.request("pro", "flash"))
        await _wait_for_pending(gate)
        await handler.handle_choice("alternate-backend")
        return await task

    assert asyncio.run(scenario()) == FallbackIntent.RETRY_ONCE
    assert settings.values[(SettingScope.USER, "security.auth.autoFallback")]["type"] == "alternate-backend"
    assert switcher.current == AuthType.OAUTH


def test_choice_handler_without_pending_request():
    handler = FallbackChoiceHandler(InteractiveDecisionGate(), environ={})
    assert asyncio.run(handler.handle_choice("stop")) is None


def test_choice_handler_rejects_unknown_choice():
    handler = FallbackChoiceHandler(InteractiveDecisionGate(), environ={})
    with pytest.raises(UnexpectedIntentError):
        asyncio.run(handler.handle_choice("maybe"))


def test_resolve_from_another_thread():
    gate = InteractiveDecisionGate()

    async def scenario():
        task = asyncio.create_task(gate.request("pro", "flash"))
        await _wait_for_pending(gate)
        results = []
        worker = threading.Thread(target=lambda: results.append(gate.resolve(FallbackIntent.RETRY_ONCE)))
        worker.start()
        await asyncio.to_thread(worker.join)
        return results, await asyncio.wait_for(task, timeout=1)

    results, intent = asyncio.run(scenario())

    assert results == [True]
    assert intent == FallbackIntent.RETRY_ONCE
    assert gate.state == GateState.IDLE


class BlockingAuthSwitcher(SessionAuthSwitcher):
    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def refresh_auth(self, auth_type):
        self.started.set()
        await self.release.wait()
        await super().refresh_auth(auth_type)


def test_choice_during_auth_switch_does_not_take_over_request():
    gate = InteractiveDecisionGate()
    settings = MemorySettings()

    async def scenario():
        switcher = BlockingAuthSwitcher()
        handler = FallbackChoiceHandler(gate, settings, switcher, environ={"SECONDARY_API_KEY": "k"})
        task = asyncio.create_task(gate.request("pro", "flash"))
        await _wait_for_pending(gate)

        first = asyncio.create_task(handler.handle_choice("secondary-key"))
        await switcher.started.wait()
        assert gate.pending is None
        assert gate.state == GateState.AWAITING_CHOICE
        second = await handler.handle_choice("stop")
        late_request = await gate.request("pro", "lite")

        switcher.release.set()
        return await first, second, late_request, await task, switcher.current

    first, second, late_request, intent, current = asyncio.run(scenario())

    assert first == FallbackIntent.RETRY_ONCE
    assert second is None
    assert late_request == FallbackIntent.STOP
    assert intent == FallbackIntent.RETRY_ONCE
    assert current == AuthType.API_KEY
    assert gate.state == GateState.IDLE
