# models.py
# Data contracts for the deskpilot core.
# No business logic lives here, only schema and validation.

from datetime import datetime, timezone
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class RiskTier(IntEnum):
    """Permission tier attached to a safety decision."""

    TIER1_AUTO = 1
    TIER2_SESSION = 2
    TIER3_ALWAYS = 3


class AgentState(str, Enum):
    """Coarse run state surfaced to the UI shell."""

    IDLE = "idle"
    CAPTURING = "capturing"
    THINKING = "thinking"
    EXECUTING = "executing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    DONE = "done"
    ERROR = "error"


class EventType(str, Enum):
    RUN_CREATED = "run.created"
    ITERATION_START = "iteration.start"
    TOOL_EXECUTED = "tool.executed"
    ITERATION_END = "iteration.end"
    RUN_COMPLETE = "run.complete"
    RUN_FAIL = "run.fail"
    RUN_STUCK = "run.stuck"
    RUN_ABANDONED = "run.abandoned"
    APPROVAL_REQUESTED = "approval.requested"
    APPROVAL_RESULT = "approval.result"


TERMINAL_EVENTS = frozenset(
    {EventType.RUN_COMPLETE, EventType.RUN_FAIL, EventType.RUN_ABANDONED}
)


# ---------------------------------------------------------------------------
# Commands and observations
# ---------------------------------------------------------------------------


class Command(BaseModel):
    """A goal submitted by a caller. Consumed once by the orchestrator."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    text: str = Field(..., min_length=1, description="Natural-language goal.")
    source: str = Field(default="chat", description="chat, hotkey, bridge, cli or resume.")
    target_pid: int | None = Field(default=None, description="Process the goal is aimed at.")
    reply_channel: Any = Field(
        default=None,
        exclude=True,
        description="Object exposing `async send_text(text)` for replies.",
    )
    created_at: datetime = Field(default_factory=_now)


class Observation(BaseModel):
    """Opaque screen snapshot returned by the capture collaborator."""

    model_config = ConfigDict(frozen=True)

    image: bytes = Field(..., description="Encoded image bytes.")
    media_type: str = Field(default="image/jpeg")
    width: int = Field(default=0, ge=0)
    height: int = Field(default=0, ge=0)
    frame: tuple[int, int, int, int] | None = Field(
        default=None, description="Captured region as (x, y, w, h) in screen points."
    )
    captured_at: datetime = Field(default_factory=_now)

    # Screen metadata the capture collaborator can report. Read by the safety gate.
    active_app: str | None = Field(default=None, description="Frontmost application name.")
    window_title: str | None = None
    focused_label: str | None = Field(default=None, description="Label of the focused control.")
    focused_secure: bool = Field(default=False, description="Focused control is a password field.")
    current_url: str | None = Field(default=None, description="Browser URL when a browser is frontmost.")


class ChatMessage(BaseModel):
    """Provider-neutral turn: plain text, or text/image content blocks."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "assistant", "user"]
    content: str | list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Actions and results
# ---------------------------------------------------------------------------


class Action(BaseModel):
    """One parsed decision from the model. Immutable, consumed once."""

    model_config = ConfigDict(frozen=True)

    tool_name: str = Field(default="", description="Tool to invoke; empty when done.")
    parameters: dict[str, Any] = Field(default_factory=dict)
    done: bool = Field(default=False, description="Goal achieved, stop the run.")
    progress_note: str = Field(default="", description="Past-tense summary for the progress log.")
    screen: str = Field(default="", description="One sentence describing the screen.")
    blocker: str | None = Field(default=None)


class ToolResult(BaseModel):
    """Normalized outcome of one dispatch."""

    model_config = ConfigDict(frozen=True)

    result: str
    is_error: bool = False
    observation: Observation | None = Field(
        default=None, description="Fresh observation produced by the tool, if any."
    )
    tier: RiskTier | None = Field(default=None, description="Tier the safety gate assigned.")


class LastAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    tool_name: str
    summary: str
    succeeded: bool
    fingerprint: str


class ToolCallSummary(BaseModel):
    """Tool call as reconstructed from the journal."""

    model_config = ConfigDict(frozen=True)

    tool: str
    params: str | None = None
    result: str | None = None
    is_error: bool = False


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


class RunState(BaseModel):
    """Per-run loop state. Owned and mutated by exactly one loop instance."""

    run_id: str
    goal: str
    started_at: datetime = Field(default_factory=_now)

    iteration: int = 0
    is_complete: bool = False
    is_failed: bool = False
    completion_reason: str = ""

    progress_lines: list[str] = Field(default_factory=list)
    last_action: LastAction | None = None
    last_fingerprint: str = ""
    recent_fingerprints: list[str] = Field(default_factory=list)
    consecutive_same_actions: int = Field(
        default=0, description="Length of the current run of identical fingerprints."
    )
    consecutive_failures: int = 0
    escape_active: bool = False

    input_tokens: int = 0
    output_tokens: int = 0


class RunResult(BaseModel):
    """Outcome of one run. Always returned, never raised."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    success: bool
    summary: str
    iterations: int
    final_score: int | None = None
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_state(cls, state: RunState) -> "RunResult":
        success = state.is_complete and not state.is_failed
        if state.completion_reason:
            summary = state.completion_reason
        else:
            summary = "Task completed successfully." if success else "Task did not complete."
        return cls(
            run_id=state.run_id,
            success=success,
            summary=summary,
            iterations=state.iteration,
            final_score=100 if success else None,
            input_tokens=state.input_tokens,
            output_tokens=state.output_tokens,
        )


# ---------------------------------------------------------------------------
# Journal
# ---------------------------------------------------------------------------


class JournalEvent(BaseModel):
    """One append-only journal line. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    type: EventType
    timestamp: datetime = Field(default_factory=_now)
    iteration: int | None = None
    command: str | None = None
    source: str | None = None
    target_pid: int | None = None
    tool: str | None = None
    tool_params: str | None = None
    tool_result: str | None = None
    is_error: bool | None = None
    tier: int | None = None
    observation: str | None = Field(default=None, description="Saved observation filename.")
    score: int | None = None
    summary: str | None = None
    reason: str | None = None
    progress_note: str | None = None
    fingerprint: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cancelled: bool | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    @classmethod
    def created(cls, command: str, source: str, target_pid: int | None = None) -> "JournalEvent":
        return cls(type=EventType.RUN_CREATED, command=command, source=source, target_pid=target_pid)

    @classmethod
    def iteration_start(
        cls, iteration: int, observation: str | None = None, reason: str | None = None
    ) -> "JournalEvent":
        return cls(
            type=EventType.ITERATION_START,
            iteration=iteration,
            observation=observation,
            reason=reason,
        )

    @classmethod
    def tool_executed(
        cls,
        tool: str,
        params: str | None,
        result: str | None,
        is_error: bool,
        iteration: int | None = None,
        tier: int | None = None,
    ) -> "JournalEvent":
        return cls(
            type=EventType.TOOL_EXECUTED,
            iteration=iteration,
            tool=tool,
            tool_params=params,
            tool_result=result,
            is_error=is_error,
            tier=tier,
        )

    @classmethod
    def iteration_end(
        cls,
        iteration: int,
        progress_note: str | None = None,
        fingerprint: str | None = None,
        is_error: bool | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        score: int | None = None,
    ) -> "JournalEvent":
        return cls(
            type=EventType.ITERATION_END,
            iteration=iteration,
            progress_note=progress_note,
            fingerprint=fingerprint,
            is_error=is_error,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            score=score,
        )

    @classmethod
    def complete(
        cls, summary: str, score: int | None, input_tokens: int = 0, output_tokens: int = 0
    ) -> "JournalEvent":
        return cls(
            type=EventType.RUN_COMPLETE,
            summary=summary,
            score=score,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    @classmethod
    def fail(
        cls,
        reason: str,
        cancelled: bool = False,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> "JournalEvent":
        return cls(
            type=EventType.RUN_FAIL,
            reason=reason,
            cancelled=cancelled or None,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    @classmethod
    def stuck(cls, reason: str, iteration: int | None = None) -> "JournalEvent":
        return cls(type=EventType.RUN_STUCK, reason=reason, iteration=iteration)

    @classmethod
    def abandoned(cls, reason: str) -> "JournalEvent":
        return cls(type=EventType.RUN_ABANDONED, reason=reason)

    @classmethod
    def approval_requested(cls, tool: str, tier: int, reason: str) -> "JournalEvent":
        return cls(type=EventType.APPROVAL_REQUESTED, tool=tool, tier=tier, reason=reason)

    @classmethod
    def approval_result(cls, tool: str, tier: int, approved: bool) -> "JournalEvent":
        return cls(
            type=EventType.APPROVAL_RESULT,
            tool=tool,
            tier=tier,
            is_error=not approved,
            summary="approved" if approved else "denied",
        )


class ReplayedRunState(BaseModel):
    """Minimal snapshot rebuilt purely from a run's journal."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    command: str
    source: str = "chat"
    target_pid: int | None = None
    iteration_count: int = 0
    last_score: int | None = None
    tool_events: tuple[ToolCallSummary, ...] = ()
    progress_lines: tuple[str, ...] = ()
    is_complete: bool = False
    is_failed: bool = False
    completion_reason: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    last_event_at: datetime | None = None


# ---------------------------------------------------------------------------
# Plugins
# ---------------------------------------------------------------------------


class PluginToolDef(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    input_schema: dict[str, Any]
    plugin_name: str = ""


class PluginManifest(BaseModel):
    """Parsed plugin.json. Tools are referenced by name from the dispatcher."""

    name: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    author: str | None = None
    entrypoint: str = Field(..., min_length=1, description="Relative path inside the plugin dir.")
    permissions: list[str] = Field(default_factory=list)
    tools: list[PluginToolDef] = Field(default_factory=list)
    directory: Path
    enabled: bool = True

    @property
    def entrypoint_path(self) -> Path:
        return self.directory / self.entrypoint
