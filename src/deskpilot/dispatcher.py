# dispatcher.py
# Routes one named action to its handler, gated by the safety layer.
#
#   dispatch(name, params, context)
#     -> resolve handler (built-in by category, or plugin)
#     -> safety gate (allow / deny / ask the user)
#     -> execute, normalize into ToolResult
#     -> journal tool.executed
#
# Handlers and executors never raise through here; any exception becomes
# an error ToolResult so the loop can keep going.

import inspect
import json
import logging
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict

from deskpilot.config import AgentConfig
from deskpilot.journal import JournalError, RunJournal
from deskpilot.models import AgentState, JournalEvent, Observation, RiskTier, ToolResult
from deskpilot.plugins import PluginRegistry
from deskpilot.safety import Decision, SafetyContext, SafetyGate
from deskpilot.tools import BUILTIN_TOOLS

logger = logging.getLogger(__name__)

HOTKEY_SUPPRESSED_TOOLS = frozenset({"type_text", "press_key"})
POINTER_TOOLS = frozenset({"click", "right_click", "double_click", "scroll"})
RECENT_TOOL_LIMIT = 10
JOURNAL_TEXT_LIMIT = 500


# ---------------------------------------------------------------------------
# Callbacks and context
# ---------------------------------------------------------------------------


class RunCallbacks(BaseModel):
    """
    UI hooks for one run. All optional.

    on_state_change(AgentState)       sync
    on_message(str)                   sync
    on_confirmation_needed(str)       async -> bool; absent means "deny"
    """

    on_state_change: Callable[[AgentState], Any] | None = None
    on_message: Callable[[str], Any] | None = None
    on_confirmation_needed: Callable[[str], Awaitable[bool]] | None = None

    def state(self, state: AgentState) -> None:
        if self.on_state_change is not None:
            self.on_state_change(state)

    def message(self, text: str) -> None:
        if self.on_message is not None:
            self.on_message(text)

    async def confirm(self, prompt: str) -> bool:
        if self.on_confirmation_needed is None:
            logger.info("no confirmation handler, denying: %s", prompt.splitlines()[0] if prompt else "")
            return False
        answer = self.on_confirmation_needed(prompt)
        if inspect.isawaitable(answer):
            answer = await answer
        return bool(answer)


class ToolContext:
    """Shared state the dispatcher may read and update during one run."""

    def __init__(
        self,
        run_id: str,
        goal: str,
        callbacks: RunCallbacks | None = None,
        journal: RunJournal | None = None,
        target_pid: int | None = None,
    ) -> None:
        self.run_id = run_id
        self.goal = goal
        self.iteration = 0
        self.callbacks = callbacks or RunCallbacks()
        self.journal = journal
        self.target_pid = target_pid
        self.observation: Observation | None = None
        self.recent_tools: list[tuple[str, str]] = []

    def record_tool(self, tool: str, summary: str) -> None:
        self.recent_tools = (self.recent_tools + [(tool, summary)])[-RECENT_TOOL_LIMIT:]

    def journal_event(self, event: JournalEvent) -> None:
        if self.journal is None or not self.journal.is_open:
            return
        try:
            self.journal.append(event)
        except JournalError as exc:
            logger.error("journal write failed for %s: %s", event.type.value, exc)

    def safety_context(self) -> SafetyContext:
        """Screen metadata comes from the latest observation."""
        screen = self.observation
        return SafetyContext(
            run_id=self.run_id,
            active_app=screen.active_app if screen else None,
            window_title=screen.window_title if screen else None,
            focused_label=screen.focused_label if screen else None,
            focused_secure=screen.focused_secure if screen else False,
            current_url=screen.current_url if screen else None,
            recent_tools=list(self.recent_tools),
            observation=screen,
        )


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


class BuiltinHandler(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    category: str
    executor: Any


class PluginHandler(BaseModel):
    model_config = ConfigDict(frozen=True)

    plugin_name: str


Handler = BuiltinHandler | PluginHandler


def _params_text(params: dict[str, Any]) -> str:
    try:
        text = json.dumps(params, sort_keys=True, default=str)
    except (TypeError, ValueError):
        text = str(params)
    return text[:JOURNAL_TEXT_LIMIT]


def to_screen_point(params: dict[str, Any], observation: Observation | None) -> dict[str, Any]:
    """Map x/y from observation pixels to screen points using the observation frame."""
    if observation is None or observation.frame is None or not observation.width or not observation.height:
        return params
    if "x" not in params or "y" not in params:
        return params
    fx, fy, fw, fh = observation.frame
    try:
        x, y = float(params["x"]), float(params["y"])
    except (TypeError, ValueError):
        return params
    scaled = dict(params)
    scaled["x"] = int(round(fx + x * fw / observation.width))
    scaled["y"] = int(round(fy + y * fh / observation.height))
    return scaled


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """
    Name-keyed routing for built-in and plugin tools.

    Example:
        dispatcher = ToolDispatcher(
            config,
            SafetyGate(config, transport),
            executors={"input": InputExecutor(), "shell": ShellExecutor()},
            capture=ScreenCapture(),
            plugins=registry,
        )
        result = await dispatcher.dispatch("click", {"x": 10, "y": 20}, context)
    """

    def __init__(
        self,
        config: AgentConfig,
        gate: SafetyGate,
        executors: dict[str, Any],
        capture: Any = None,
        plugins: PluginRegistry | None = None,
    ) -> None:
        self._config = config
        self._gate = gate
        self._executors = dict(executors)
        self._capture = capture
        self._plugins = plugins

    @property
    def gate(self) -> SafetyGate:
        return self._gate

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def resolve(self, name: str) -> Handler | None:
        spec = BUILTIN_TOOLS.get(name)
        if spec is not None:
            executor = self._capture if spec.category == "capture" else self._executors.get(spec.category)
            if executor is None:
                return None
            return BuiltinHandler(category=spec.category, executor=executor)
        if self._plugins is not None and self._plugins.is_plugin_tool(name):
            manifest = self._plugins.manifest_for_tool(name)
            if manifest is not None:
                return PluginHandler(plugin_name=manifest.name)
        return None

    def available_actions(self) -> list[tuple[str, str]]:
        """(name, argument hint) for every tool the model may call right now."""
        actions = [
            (name, spec.args)
            for name, spec in BUILTIN_TOOLS.items()
            if self.resolve(name) is not None
        ]
        if self._plugins is not None:
            for tool in self._plugins.tool_definitions():
                if tool.name in BUILTIN_TOOLS:
                    continue
                actions.append((tool.name, f"{json.dumps(tool.input_schema)}  # {tool.description}"))
        return actions

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, name: str, params: dict[str, Any], context: ToolContext) -> ToolResult:
        if self._plugins is not None:
            self._plugins.refresh()

        handler = self.resolve(name)
        if handler is None:
            result = ToolResult(result=f"Unknown tool: {name}", is_error=True)
            self._finish(name, params, result, context)
            return result

        tier: RiskTier | None = None
        if self._config.confirm_destructive_actions:
            denied, tier = await self._gate_check(name, params, handler, context)
            if denied is not None:
                self._finish(name, params, denied, context)
                return denied

        context.callbacks.state(AgentState.EXECUTING)
        try:
            result = await self._execute(name, params, handler, context)
        except Exception as exc:
            logger.exception("tool %s raised", name)
            result = ToolResult(result=f"Tool {name} failed: {type(exc).__name__}: {exc}", is_error=True)

        if tier is not None:
            result = result.model_copy(update={"tier": tier})
        if result.observation is not None:
            context.observation = result.observation
        self._finish(name, params, result, context)
        return result

    async def _gate_check(
        self, name: str, params: dict[str, Any], handler: Handler, context: ToolContext
    ) -> tuple[ToolResult | None, RiskTier]:
        """Returns (denial result or None, tier)."""
        manifest = None
        if isinstance(handler, PluginHandler) and self._plugins is not None:
            manifest = self._plugins.manifest_for_tool(name)

        safety = context.safety_context()
        verdict = await self._gate.evaluate(name, params, safety, plugin=manifest)

        if verdict.decision is Decision.ALLOW:
            return None, verdict.tier
        if verdict.decision is Decision.DENY:
            text = f"Denied: {verdict.reason} (declined earlier this session)."
            return ToolResult(result=text, is_error=True, tier=verdict.tier), verdict.tier

        context.journal_event(JournalEvent.approval_requested(name, int(verdict.tier), verdict.reason))
        context.callbacks.state(AgentState.AWAITING_CONFIRMATION)
        approved = await context.callbacks.confirm(verdict.prompt)
        self._gate.record_approval(verdict, approved, params, safety)
        context.journal_event(JournalEvent.approval_result(name, int(verdict.tier), approved))

        if not approved:
            logger.info("user denied %s (tier %d)", name, verdict.tier)
            text = f"User denied {name}: {verdict.reason}"
            return ToolResult(result=text, is_error=True, tier=verdict.tier), verdict.tier
        return None, verdict.tier

    async def _execute(
        self, name: str, params: dict[str, Any], handler: Handler, context: ToolContext
    ) -> ToolResult:
        if isinstance(handler, PluginHandler):
            return await self._plugins.execute(name, params)

        if handler.category == "capture":
            observation = await handler.executor.capture(
                context.target_pid,
                self._config.screenshot_max_dimension,
                self._config.screenshot_quality,
            )
            return ToolResult(
                result=f"Screenshot captured ({observation.width}x{observation.height}).",
                observation=observation,
            )

        if handler.category == "input":
            if name in POINTER_TOOLS:
                params = to_screen_point(params, context.observation)
            text, is_error = await handler.executor.execute(
                name, params, suppress_hotkey=name in HOTKEY_SUPPRESSED_TOOLS
            )
        else:
            text, is_error = await handler.executor.execute(name, params)
        return ToolResult(result=text, is_error=is_error)

    def _finish(
        self, name: str, params: dict[str, Any], result: ToolResult, context: ToolContext
    ) -> None:
        context.record_tool(name, result.result[:80])
        context.journal_event(
            JournalEvent.tool_executed(
                tool=name,
                params=_params_text(params),
                result=result.result[:JOURNAL_TEXT_LIMIT],
                is_error=result.is_error,
                iteration=context.iteration,
                tier=int(result.tier) if result.tier is not None else None,
            )
        )
