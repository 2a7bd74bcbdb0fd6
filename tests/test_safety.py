import asyncio
from pathlib import Path

import pytest
from conftest import FakeTransport

from deskpilot.config import AgentConfig
from deskpilot.models import PluginManifest, RiskTier
from deskpilot.safety import (
    Decision,
    SafetyContext,
    SafetyGate,
    contains_card_number,
    parse_risk_line,
    sanitize_params,
)


def _gate(mode="standard", transport=None, **overrides):
    gate = SafetyGate(AgentConfig(permission_mode=mode, **overrides), transport)
    gate.start_run("run-1")
    return gate


# ---------------------------------------------------------------------------
# Heuristic Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_plain_click_is_allowed():
    verdict = await _gate().evaluate("click", {"x": 1, "y": 2}, SafetyContext())
    assert verdict.decision is Decision.ALLOW
    assert verdict.tier is RiskTier.TIER1_AUTO


@pytest.mark.asyncio
async def test_financial_click_always_asks():
    verdict = await _gate("yolo").evaluate(
        "click", {"x": 1, "y": 2, "element_description": "Place Order"}, SafetyContext()
    )
    assert verdict.tier is RiskTier.TIER3_ALWAYS
    assert verdict.decision is Decision.ASK
    assert "FINANCIAL" in verdict.prompt


@pytest.mark.asyncio
async def test_card_number_in_text_is_tier3():
    verdict = await _gate().evaluate("type_text", {"text": "4111 1111 1111 1111"}, SafetyContext())
    assert verdict.tier is RiskTier.TIER3_ALWAYS


@pytest.mark.asyncio
async def test_secure_field_is_tier3():
    context = SafetyContext(active_app="Safari", focused_secure=True, focused_label="Password")
    verdict = await _gate().evaluate("type_text", {"text": "hunter2"}, context)
    assert verdict.tier is RiskTier.TIER3_ALWAYS


@pytest.mark.asyncio
async def test_enter_after_typing_in_messaging_app_is_tier2():
    context = SafetyContext(active_app="Slack", recent_tools=[("type_text", "Typed 5 characters.")])
    verdict = await _gate().evaluate("press_key", {"key": "return"}, context)
    assert verdict.tier is RiskTier.TIER2_SESSION
    assert verdict.decision is Decision.ASK


@pytest.mark.asyncio
async def test_cmd_delete_is_tier3():
    verdict = await _gate().evaluate("press_key", {"key": "delete", "modifiers": ["command"]}, SafetyContext())
    assert verdict.tier is RiskTier.TIER3_ALWAYS


@pytest.mark.asyncio
async def test_banking_url_is_tier3_and_normal_url_allowed():
    gate = _gate()
    banking = await gate.evaluate("open_url", {"url": "https://www.chase.com/login"}, SafetyContext())
    normal = await gate.evaluate("open_url", {"url": "https://example.com"}, SafetyContext())
    assert banking.tier is RiskTier.TIER3_ALWAYS
    assert normal.decision is Decision.ALLOW


@pytest.mark.asyncio
async def test_plugin_uses_declared_permissions():
    manifest = PluginManifest(
        name="weather",
        version="1.0.0",
        description="Weather lookups",
        entrypoint="run.py",
        permissions=["network"],
        directory=Path("/tmp/weather"),
    )
    verdict = await _gate().evaluate("get_weather", {"city": "Oslo"}, SafetyContext(), plugin=manifest)
    assert verdict.tier is RiskTier.TIER2_SESSION
    assert verdict.cache_key == "plugin:weather:network_access"


# ---------------------------------------------------------------------------
# Session Cache Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_tier2_approval_is_cached_for_the_session():
    gate = _gate()
    context = SafetyContext()
    first = await gate.evaluate("run_shell_command", {"command": "mkdir build"}, context)
    assert first.decision is Decision.ASK
    assert first.cache_key == "shell:file_writes"

    gate.record_approval(first, True, {"command": "mkdir build"}, context)
    second = await gate.evaluate("run_shell_command", {"command": "touch notes.txt"}, context)
    assert second.decision is Decision.ALLOW
    assert second.method == "session"


@pytest.mark.asyncio
async def test_tier2_denial_is_cached_as_deny():
    gate = _gate()
    context = SafetyContext()
    first = await gate.evaluate("run_shell_command", {"command": "curl https://x.io"}, context)
    gate.record_approval(first, False, {}, context)
    second = await gate.evaluate("run_shell_command", {"command": "wget https://x.io"}, context)
    assert second.decision is Decision.DENY


@pytest.mark.asyncio
async def test_tier3_is_never_cached():
    gate = _gate()
    context = SafetyContext()
    first = await gate.evaluate("run_shell_command", {"command": "rm -rf build"}, context)
    gate.record_approval(first, True, {}, context)
    second = await gate.evaluate("run_shell_command", {"command": "rm -rf build"}, context)
    assert second.decision is Decision.ASK


@pytest.mark.asyncio
async def test_start_run_clears_the_session():
    gate = _gate()
    context = SafetyContext()
    first = await gate.evaluate("run_shell_command", {"command": "mkdir a"}, context)
    gate.record_approval(first, True, {}, context)
    gate.start_run("run-2")
    again = await gate.evaluate("run_shell_command", {"command": "mkdir b"}, context)
    assert again.decision is Decision.ASK


# ---------------------------------------------------------------------------
# Permission Mode Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_autonomous_allows_tier2_but_asks_tier3():
    gate = _gate("autonomous")
    tier2 = await gate.evaluate("run_shell_command", {"command": "mkdir x"}, SafetyContext())
    tier3 = await gate.evaluate("run_shell_command", {"command": "sudo ls"}, SafetyContext())
    assert tier2.decision is Decision.ALLOW
    assert tier3.decision is Decision.ASK


@pytest.mark.asyncio
async def test_yolo_skips_the_safety_model():
    transport = FakeTransport(default="RISK: critical -- nope")
    gate = _gate("yolo", transport)
    verdict = await gate.evaluate("run_shell_command", {"command": "frobnicate"}, SafetyContext())
    assert verdict.decision is Decision.ALLOW
    assert transport.calls == []


# ---------------------------------------------------------------------------
# LLM Fallback Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_inconclusive_command_uses_safety_model():
    transport = FakeTransport(["RISK: critical -- deletes user data"])
    gate = _gate(transport=transport)
    verdict = await gate.evaluate("run_shell_command", {"command": "frobnicate --all"}, SafetyContext())
    assert verdict.tier is RiskTier.TIER3_ALWAYS
    assert verdict.reason == "deletes user data"
    assert verdict.method == "llm"
    assert transport.calls[0]["model"] == gate._config.safety_model


@pytest.mark.asyncio
async def test_safe_answer_allows():
    transport = FakeTransport(["RISK: safe -- just prints"])
    verdict = await _gate(transport=transport).evaluate(
        "run_shell_command", {"command": "frobnicate"}, SafetyContext()
    )
    assert verdict.decision is Decision.ALLOW


@pytest.mark.asyncio
async def test_garbage_answer_keeps_heuristic_and_is_not_cached():
    transport = FakeTransport(["I think it is fine"])
    verdict = await _gate(transport=transport).evaluate(
        "run_shell_command", {"command": "frobnicate"}, SafetyContext()
    )
    assert verdict.tier is RiskTier.TIER2_SESSION
    assert verdict.decision is Decision.ASK
    assert verdict.cache_key is None


@pytest.mark.asyncio
async def test_slow_safety_model_times_out():
    class SlowTransport:
        async def send(self, *args):
            await asyncio.sleep(5)

    gate = _gate(transport=SlowTransport(), safety_llm_timeout=0.01)
    verdict = await gate.evaluate("run_shell_command", {"command": "frobnicate"}, SafetyContext())
    assert verdict.tier is RiskTier.TIER2_SESSION
    assert verdict.decision is Decision.ASK


# ---------------------------------------------------------------------------
# Audit Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_audit_records_tier2_and_up_only():
    gate = _gate()
    context = SafetyContext(active_app="Terminal")
    await gate.evaluate("click", {"x": 1, "y": 1}, context)
    verdict = await gate.evaluate("run_shell_command", {"command": "mkdir x", "token": "abc"}, context)
    gate.record_approval(verdict, True, {"command": "mkdir x", "token": "abc"}, context)

    entries = gate.end_run()
    assert len(entries) == 1
    entry = entries[0]
    assert entry.run_id == "run-1"
    assert entry.approved is True
    assert "[REDACTED]" in entry.input
    assert "abc" not in entry.input
    assert entry.app_context.startswith("Terminal")
    assert gate.end_run() == []


# ---------------------------------------------------------------------------
# Helper Tests
# ---------------------------------------------------------------------------


def test_parse_risk_line():
    assert parse_risk_line("RISK: high -- sends an email") == (RiskTier.TIER2_SESSION, "sends an email")
    assert parse_risk_line("preamble\nrisk: moderate -- ok")[0] is RiskTier.TIER1_AUTO
    assert parse_risk_line("RISK: extreme -- ?") is None
    assert parse_risk_line("") is None


def test_sanitize_params_redacts_and_sorts():
    assert sanitize_params({"b": 1, "password": "x", "a": "y"}) == "a=y, b=1, password=[REDACTED]"


def test_contains_card_number():
    assert contains_card_number("4111-1111-1111-1111")
    assert not contains_card_number("call me at 555 1234")
