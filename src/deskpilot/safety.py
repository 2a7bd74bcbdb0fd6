# safety.py
# Safety gate for side-effecting tool calls.
#
# Two phases:
#   1. Heuristic  per-tool rules, permissions.classify_* for shell/script/plugins
#   2. Fallback   only for inconclusive heuristics, a short LLM call that answers
#                 "RISK: safe|moderate|high|critical -- reason" within a timeout
#
# The gate never executes anything and never prompts the user. It returns a
# Verdict (allow / deny / ask); the dispatcher owns the confirmation round trip
# and reports the answer back through record_approval().

import asyncio
import base64
import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field

from deskpilot.config import AgentConfig
from deskpilot.models import Observation, PluginManifest, RiskTier
from deskpilot.permissions import (
    Category,
    Classification,
    classify_command,
    classify_plugin_permissions,
    classify_script,
)
from deskpilot.transport import Transport, user_message

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

FINANCIAL_CLICK_PATTERNS = (
    "purchase", "buy now", "place order", "checkout", "pay",
    "confirm payment", "authorize", "wire transfer", "send money",
    "subscribe", "confirm purchase",
)

IRREVERSIBLE_CLICK_PATTERNS = (
    "send", "submit", "post", "publish", "delete", "remove",
    "trash", "confirm", "sign out", "log out", "unsubscribe",
    "cancel subscription", "transfer", "approve", "execute",
    "empty trash", "permanently delete", "revoke",
)

SENSITIVE_FIELD_LABELS = (
    "password", "credit card", "card number", "cvv", "ssn",
    "social security", "routing number", "account number",
    "bank", "pin", "secret", "token", "api key",
)

SENSITIVE_FORM_PATTERNS = (
    "checkout", "payment", "billing", "credit card", "transfer funds", "wire transfer",
)

CONFIRMATION_DIALOG_PATTERNS = (
    "confirm", "are you sure", "delete", "remove", "send",
    "transfer", "payment", "purchase", "unsubscribe",
)

MESSAGING_APPS = (
    "messages", "telegram", "whatsapp", "slack", "discord",
    "signal", "microsoft teams", "mail",
)

BANKING_DOMAINS = (
    "chase.com", "bankofamerica.com", "wellsfargo.com", "citi.com",
    "capitalone.com", "usbank.com", "pnc.com", "tdbank.com",
    "schwab.com", "fidelity.com", "vanguard.com", "etrade.com",
    "paypal.com", "venmo.com", "zelle.com", "wise.com",
    "coinbase.com", "binance.com", "kraken.com",
)

REDACTED_KEYS = ("password", "secret", "token", "api_key", "credit_card")

_CARD_PATTERN = re.compile(r"\b\d{13,19}\b")
_SSN_PATTERN = re.compile(r"\b\d{3}[-\s]?\d{2}[-\s]?\d{4}\b")

READ_ONLY_TOOLS = frozenset(
    {"take_screenshot", "scroll", "open_application", "vault_read", "vault_list"}
)

SAFETY_SYSTEM_PROMPT = """\
You are a safety classifier for an AI desktop agent. Evaluate the risk of a tool call.
Respond with EXACTLY one line in this format:
RISK: safe|moderate|high|critical -- <reason>

Rules:
- safe: No risk, proceed automatically (reading, observing, safe navigation)
- moderate: Low risk, log but proceed (file writes to safe paths, normal clicks)
- high: Needs user approval (sending messages, destructive UI actions, network writes)
- critical: ALWAYS needs approval (financial, credential entry, system modification, data deletion)\
"""

_RISK_TIERS = {
    "safe": RiskTier.TIER1_AUTO,
    "moderate": RiskTier.TIER1_AUTO,
    "high": RiskTier.TIER2_SESSION,
    "critical": RiskTier.TIER3_ALWAYS,
}

_SCOPES = {
    "run_shell_command": "shell",
    "run_applescript": "script",
    "vault_write": "vault",
}


def contains_card_number(text: str) -> bool:
    stripped = re.sub(r"[\s-]", "", text)
    return bool(_CARD_PATTERN.search(stripped))


def contains_ssn(text: str) -> bool:
    return bool(_SSN_PATTERN.search(text))


def _truthy(value: Any) -> bool:
    return value is True or str(value).lower() in ("true", "1", "yes")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


class SafetyContext(BaseModel):
    """What the gate may know about the screen at decision time."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str = "unknown"
    active_app: str | None = None
    window_title: str | None = None
    focused_label: str | None = None
    focused_secure: bool = False
    current_url: str | None = None
    recent_tools: list[tuple[str, str]] = Field(
        default_factory=list, description="(tool, summary) pairs, oldest first."
    )
    observation: Observation | None = None

    @property
    def app_context(self) -> str:
        return f"{self.active_app or '?'} -- {self.window_title or '?'}"


class Verdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    tool: str
    tier: RiskTier
    reason: str
    decision: Decision
    prompt: str = Field(default="", description="Question shown to the user on ASK.")
    cache_key: str | None = None
    method: str = "heuristic"


class AuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    run_id: str
    tool: str
    input: str
    tier: int
    reason: str
    method: str
    approved: bool | None = None
    app_context: str = ""


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class SafetyGate:
    """
    Classifies tool calls into tiers and decides allow / deny / ask.

    Example:
        gate = SafetyGate(AgentConfig(), transport)
        gate.start_run("run-1")
        verdict = await gate.evaluate("run_shell_command", {"command": "rm -rf x"}, SafetyContext())
        # verdict.tier == RiskTier.TIER3_ALWAYS, verdict.decision == Decision.ASK
    """

    def __init__(self, config: AgentConfig, transport: Transport | None = None) -> None:
        self._config = config
        self._transport = transport
        self._session: dict[str, bool] = {}
        self._audit: list[AuditEntry] = []
        self._run_id = "unknown"

    @property
    def mode(self) -> str:
        return self._config.permission_mode

    @property
    def audit_log(self) -> list[AuditEntry]:
        return list(self._audit)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def start_run(self, run_id: str) -> None:
        self._run_id = run_id
        self._session.clear()
        self._audit.clear()

    def end_run(self) -> list[AuditEntry]:
        """Hand back this run's audit entries and reset the buffer."""
        entries = list(self._audit)
        self._audit.clear()
        return entries

    def is_session_approved(self, cache_key: str) -> bool:
        return self._session.get(cache_key) is True

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(
        self,
        tool_name: str,
        params: dict[str, Any],
        context: SafetyContext,
        plugin: PluginManifest | None = None,
    ) -> Verdict:
        classification, prompt = self.heuristic(tool_name, params, context, plugin)
        method = "heuristic"

        if not classification.conclusive and self.mode != "yolo":
            classification = await self._evaluate_with_llm(tool_name, params, context, classification)
            method = "llm"

        verdict = self._decide(tool_name, classification, prompt, method, plugin)
        if verdict.decision is not Decision.ASK:
            self._record(verdict, params, context, approved=verdict.decision is Decision.ALLOW)
        return verdict

    def record_approval(
        self, verdict: Verdict, approved: bool, params: dict[str, Any], context: SafetyContext
    ) -> None:
        """Store the user's answer to an ASK verdict."""
        if verdict.tier is RiskTier.TIER2_SESSION and verdict.cache_key:
            self._session[verdict.cache_key] = approved
        self._record(verdict, params, context, approved=approved)

    def _decide(
        self,
        tool_name: str,
        classification: Classification,
        prompt: str,
        method: str,
        plugin: PluginManifest | None,
    ) -> Verdict:
        tier = classification.tier
        cache_key = self._cache_key(tool_name, classification, plugin)
        base = dict(
            tool=tool_name,
            tier=tier,
            reason=classification.reason,
            prompt=prompt or classification.reason,
            cache_key=cache_key,
        )

        if tier is RiskTier.TIER1_AUTO:
            return Verdict(decision=Decision.ALLOW, method=method, **base)
        if tier is RiskTier.TIER3_ALWAYS:
            return Verdict(decision=Decision.ASK, method=method, **base)

        if self.mode in ("autonomous", "yolo"):
            return Verdict(decision=Decision.ALLOW, method="mode", **base)
        if cache_key is not None and cache_key in self._session:
            decision = Decision.ALLOW if self._session[cache_key] else Decision.DENY
            return Verdict(decision=decision, method="session", **base)
        return Verdict(decision=Decision.ASK, method=method, **base)

    @staticmethod
    def _cache_key(
        tool_name: str, classification: Classification, plugin: PluginManifest | None
    ) -> str | None:
        category = classification.category
        if category is None or category is Category.UNCATEGORIZED:
            return None
        if plugin is not None:
            return f"plugin:{plugin.name}:{category.value}"
        return f"{_SCOPES.get(tool_name, tool_name)}:{category.value}"

    # ------------------------------------------------------------------
    # Heuristics
    # ------------------------------------------------------------------

    def heuristic(
        self,
        tool_name: str,
        params: dict[str, Any],
        context: SafetyContext,
        plugin: PluginManifest | None = None,
    ) -> tuple[Classification, str]:
        """Per-tool rules. Returns the classification and the confirmation prompt."""
        if plugin is not None:
            classification = classify_plugin_permissions(plugin.permissions)
            return classification, f"Plugin '{plugin.name}' tool {tool_name}: {classification.reason}"

        if tool_name in ("click", "right_click", "double_click"):
            return self._click(params, context)
        if tool_name == "type_text":
            return self._type_text(params, context)
        if tool_name == "press_key":
            return self._press_key(params, context)
        if tool_name == "run_shell_command":
            command = str(params.get("command", ""))
            classification = classify_command(command)
            return classification, f"{classification.reason}\n\n{command}"
        if tool_name == "run_applescript":
            script = str(params.get("script", ""))
            classification = classify_script(script)
            return classification, f"{classification.reason}\n\n{script[:200]}"
        if tool_name == "open_url":
            return self._open_url(params)
        if tool_name == "vault_write":
            path = params.get("path", "")
            return (
                _classification(RiskTier.TIER2_SESSION, "Writes to the vault", Category.FILE_WRITES),
                f"Write vault note {path}?",
            )
        if tool_name in READ_ONLY_TOOLS:
            return _classification(RiskTier.TIER1_AUTO, "Read-only or navigation action"), ""
        return _classification(RiskTier.TIER1_AUTO, f"No rule for {tool_name}"), ""

    def _click(self, params: dict[str, Any], context: SafetyContext) -> tuple[Classification, str]:
        element = str(params.get("element_description", params.get("element", ""))).lower()
        app = context.active_app or "unknown app"
        if element and any(p in element for p in FINANCIAL_CLICK_PATTERNS):
            return (
                _classification(RiskTier.TIER3_ALWAYS, f"Financial action: {element}"),
                f'FINANCIAL ACTION: Click "{element}" in {app}?',
            )
        if element and any(p in element for p in IRREVERSIBLE_CLICK_PATTERNS):
            return (
                _classification(
                    RiskTier.TIER2_SESSION,
                    f"Irreversible UI action: {element}",
                    Category.APP_STATE_CHANGES,
                ),
                f'Click "{element}" in {app}?',
            )
        return _classification(RiskTier.TIER1_AUTO, "Normal click"), ""

    def _type_text(self, params: dict[str, Any], context: SafetyContext) -> tuple[Classification, str]:
        text = str(params.get("text", ""))
        app = context.active_app or "unknown app"
        if contains_card_number(text) or contains_ssn(text):
            return (
                _classification(RiskTier.TIER3_ALWAYS, "Text contains a card number or SSN pattern"),
                "SENSITIVE DATA DETECTED: the text looks like a card number or SSN. Type it anyway?",
            )
        if context.focused_secure:
            return (
                _classification(RiskTier.TIER3_ALWAYS, f"Typing into a secure field in {app}"),
                f"Type into secure field ({context.focused_label or 'password'}) in {app}?",
            )
        window = (context.window_title or "").lower()
        url = (context.current_url or "").lower()
        if any(p in window or p in url for p in SENSITIVE_FORM_PATTERNS):
            return (
                _classification(RiskTier.TIER3_ALWAYS, f"Typing in a sensitive form: {context.window_title}"),
                f'Type "{text[:50]}" into a form in {app}?',
            )
        label = (context.focused_label or str(params.get("field", ""))).lower()
        if label and any(p in label for p in SENSITIVE_FIELD_LABELS):
            return (
                _classification(RiskTier.TIER3_ALWAYS, f"Typing into field labeled '{label}'"),
                f'Type into field "{label}" in {app}?',
            )
        return _classification(RiskTier.TIER1_AUTO, "Normal text input"), ""

    def _press_key(self, params: dict[str, Any], context: SafetyContext) -> tuple[Classification, str]:
        key = str(params.get("key", "")).lower()
        modifiers = [str(m).lower() for m in params.get("modifiers", []) or []]
        has_cmd = _truthy(params.get("command")) or "command" in modifiers or "cmd" in modifiers
        app = context.active_app or "unknown app"

        if key in ("return", "enter"):
            window = (context.window_title or "").lower()
            if any(p in window for p in CONFIRMATION_DIALOG_PATTERNS):
                return (
                    _classification(
                        RiskTier.TIER2_SESSION,
                        f"Enter pressed in confirmation dialog: {context.window_title}",
                        Category.APP_STATE_CHANGES,
                    ),
                    f'Press Enter in "{context.window_title}"?',
                )
            active = (context.active_app or "").lower()
            last_tool = context.recent_tools[-1][0] if context.recent_tools else None
            if any(a in active for a in MESSAGING_APPS) and last_tool == "type_text":
                return (
                    _classification(
                        RiskTier.TIER2_SESSION,
                        "Enter in a messaging app after typing sends the message",
                        Category.APP_STATE_CHANGES,
                    ),
                    f"Press Enter to send the message in {app}?",
                )

        if has_cmd and key in ("delete", "backspace"):
            return (
                _classification(RiskTier.TIER3_ALWAYS, f"Destructive shortcut: Cmd+Delete in {app}"),
                f"Press Cmd+Delete in {app}?",
            )
        return _classification(RiskTier.TIER1_AUTO, "Normal key press"), ""

    @staticmethod
    def _open_url(params: dict[str, Any]) -> tuple[Classification, str]:
        url = str(params.get("url", ""))
        host = (urlparse(url).hostname or "").lower()
        if host and any(host == d or host.endswith("." + d) for d in BANKING_DOMAINS):
            return (
                _classification(RiskTier.TIER3_ALWAYS, f"Opening banking or financial site: {host}"),
                f"FINANCIAL SITE: Open {url}?",
            )
        return _classification(RiskTier.TIER1_AUTO, "Normal URL navigation"), ""

    # ------------------------------------------------------------------
    # LLM fallback
    # ------------------------------------------------------------------

    async def _evaluate_with_llm(
        self,
        tool_name: str,
        params: dict[str, Any],
        context: SafetyContext,
        hint: Classification,
    ) -> Classification:
        """Score an inconclusive call with the safety model; keep `hint` on any failure."""
        if self._transport is None:
            return hint

        prompt = self._evaluation_prompt(tool_name, params, context)
        image_b64 = None
        media_type = "image/jpeg"
        if context.observation is not None:
            image_b64 = base64.b64encode(context.observation.image).decode("ascii")
            media_type = context.observation.media_type

        try:
            response = await asyncio.wait_for(
                self._transport.send(
                    [user_message(prompt, image_b64, media_type)],
                    SAFETY_SYSTEM_PROMPT,
                    [],
                    self._config.safety_model,
                    64,
                ),
                timeout=self._config.safety_llm_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("safety model timed out for %s, keeping heuristic tier", tool_name)
            return hint
        except Exception as exc:
            logger.warning("safety model failed for %s: %s", tool_name, exc)
            return hint

        parsed = parse_risk_line(response.text)
        if parsed is None:
            logger.warning("unparseable safety verdict for %s: %r", tool_name, response.text[:120])
            return hint
        tier, reason = parsed
        category = hint.category if tier is RiskTier.TIER2_SESSION else None
        return Classification(tier=tier, reason=reason, category=category, conclusive=True)

    @staticmethod
    def _evaluation_prompt(tool_name: str, params: dict[str, Any], context: SafetyContext) -> str:
        recent = ", ".join(f"{name}: {summary}" for name, summary in context.recent_tools[-5:])
        return (
            "Evaluate this tool call for risk:\n\n"
            f"Tool: {tool_name}\n"
            f"Input: {sanitize_params(params)}\n\n"
            "Context:\n"
            f"- Active App: {context.active_app or 'unknown'}\n"
            f"- Window Title: {context.window_title or 'unknown'}\n"
            f"- Focused Element: {context.focused_label or 'none'}\n"
            f"- Browser URL: {context.current_url or 'N/A'}\n"
            f"- Recent Actions: {recent or 'none'}\n\n"
            "What is the risk level?"
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _record(
        self, verdict: Verdict, params: dict[str, Any], context: SafetyContext, approved: bool
    ) -> None:
        if verdict.tier < RiskTier.TIER2_SESSION:
            return
        self._audit.append(
            AuditEntry(
                run_id=self._run_id,
                tool=verdict.tool,
                input=sanitize_params(params),
                tier=int(verdict.tier),
                reason=verdict.reason,
                method=verdict.method,
                approved=approved,
                app_context=context.app_context,
            )
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _classification(
    tier: RiskTier, reason: str, category: Category | None = None
) -> Classification:
    return Classification(tier=tier, reason=reason, category=category)


def parse_risk_line(text: str) -> tuple[RiskTier, str] | None:
    """Read 'RISK: <level> -- <reason>' from a safety model answer."""
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped.upper().startswith("RISK:"):
            continue
        parts = [p.strip() for p in stripped[5:].split("--", 1)]
        level = parts[0].lower()
        if level not in _RISK_TIERS:
            continue
        reason = parts[1] if len(parts) > 1 and parts[1] else "Classified by safety model"
        return _RISK_TIERS[level], reason
    return None


def sanitize_params(params: dict[str, Any]) -> str:
    """Flatten params for prompts and audit lines with secrets redacted."""
    items = []
    for key in sorted(params):
        value = "[REDACTED]" if key in REDACTED_KEYS else str(params[key])[:100]
        items.append(f"{key}={value}")
    return ", ".join(items)
