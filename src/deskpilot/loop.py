# loop.py
# Reactive observe -> think -> act loop.
#
# The loop is the only owner of RunState. Every iteration is self-contained:
# a fresh screenshot, a freshly built system prompt (goal, rolling progress
# log, last action, escape hatch when stuck) and exactly one model call with
# no prior turns. The model answers with a single JSON action which the
# dispatcher executes.
#
# Control flow per iteration:
#   cancel? -> capture -> stuck? -> prompt -> model (retry per policy)
#   -> parse -> done? -> fingerprint -> dispatch -> fold result -> journal
#
# Nothing escapes run() as an exception. Every exit journals exactly one
# terminal event and returns a RunResult.

import asyncio
import base64
import json
import logging
import math
import re
from typing import Any, Awaitable, Callable

from deskpilot.config import AgentConfig
from deskpilot.dispatcher import RunCallbacks, ToolContext, ToolDispatcher
from deskpilot.journal import RunJournal, new_run_id
from deskpilot.models import (
    Action,
    AgentState,
    JournalEvent,
    LastAction,
    Observation,
    ReplayedRunState,
    RunResult,
    RunState,
)
from deskpilot.retry import classify, classify_tool_error, describe, strategy_for
from deskpilot.transport import LLMResponse, Transport, user_message

logger = logging.getLogger(__name__)

COORDINATE_KEYS = frozenset({"x", "y"})

Sleep = Callable[[float, asyncio.Event], Awaitable[bool]]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ActionParseError(Exception):
    """Raised internally when a model response holds no usable JSON action."""


class _RunCancelled(Exception):
    """Raised internally when a cancellable sleep is interrupted."""


# ---------------------------------------------------------------------------
# System Prompt
# ---------------------------------------------------------------------------

IDENTITY = "You are deskpilot, a desktop automation agent that controls the computer one action at a time."

ESCAPE_NOTE = """\
STOP: You have repeated {tool} with the same parameters several times. It is NOT working.
Mandatory alternatives, in order:
1. If you were clicking a text field to focus it, use type_text directly without clicking.
2. If a click has no effect, press the Tab key to move focus instead.
3. If Tab does not help, click a clearly different location or scroll to find the element.
4. If a dialog or popup is in the way, dismiss it first (Escape or its close button).
5. If nothing works after trying these, set "done": true and describe the blocker.
Do NOT repeat the same action again.\
"""

OUTPUT_CONTRACT = """\
## YOUR JOB
Look at the screenshot. Then output ONLY this JSON (no markdown, no explanation):
{
  "screen": "1 sentence describing exactly what you see",
  "blocker": null,
  "action": "tool_name",
  "params": {},
  "progress_note": "what this action accomplishes (past tense)",
  "done": false
}
When the goal is fully achieved, set "done": true and put the outcome in "progress_note";
"action" may then be omitted.

## RULES
- Describe ONLY what you actually see. Never invent UI elements.
- If an unexpected popup or dialog is visible, handle it first.
- Never repeat a failed action; try a different approach.
- Coordinates are pixels in the screenshot; click the CENTER of elements.
- If the target app is already visible, interact with it instead of opening it again.
- One key per press_key call.\
"""


def build_system_prompt(
    state: RunState,
    max_iterations: int,
    actions: list[tuple[str, str]],
    context: str = "",
    escape_note: str | None = None,
) -> str:
    """Assemble the self-contained prompt for one iteration."""
    progress = "\n".join(state.progress_lines) if state.progress_lines else "Nothing yet."

    if state.last_action is not None:
        status = "succeeded" if state.last_action.succeeded else "FAILED"
        last = f"{state.last_action.tool_name} ({status}): {state.last_action.summary}"
    else:
        last = "None"

    sections = [
        IDENTITY,
        f"Iteration: {state.iteration}/{max_iterations}",
        f"## GOAL\n{state.goal}",
    ]
    if context.strip():
        sections.append(f"## CONTEXT\n{context.strip()}")
    sections.append(f"## WHAT YOU'VE DONE SO FAR\n{progress}")
    sections.append(f"## LAST ACTION\n{last}")
    if escape_note:
        sections.append(f"## URGENT: BREAK THE LOOP\n{escape_note}")
    sections.append(OUTPUT_CONTRACT)
    sections.append(
        "## AVAILABLE ACTIONS\n" + "\n".join(f"- {name}: {args}" for name, args in actions)
    )
    return "\n\n".join(sections)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def _first_balanced_object(text: str) -> str | None:
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = escaped = False
    for index in range(start, len(text)):
        ch = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def _loads_object(raw: str | None) -> dict | None:
    if not raw:
        return None
    try:
        data = json.loads(raw, strict=False)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _extract_json(text: str) -> dict:
    """
    Raw JSON, then a fenced ```json block, then the first balanced {...}.
    Raises ActionParseError when none of them yields an object.
    """
    trimmed = text.strip()
    data = _loads_object(trimmed)
    if data is None:
        fence = _FENCE.search(trimmed)
        data = _loads_object(fence.group(1).strip() if fence else None)
    if data is None:
        data = _loads_object(_first_balanced_object(trimmed))
    if data is None:
        raise ActionParseError(f"No JSON object in response: {trimmed[:200]}")
    return data


def parse_action(text: str) -> Action | None:
    """Parse a model response into an Action, or None when it is unusable."""
    try:
        data = _extract_json(text or "")
    except ActionParseError as exc:
        logger.debug("%s", exc)
        return None

    done = data.get("done") is True
    tool = data.get("action")
    if isinstance(tool, dict):
        # Tolerate {"action": {"tool": ..., "params": ...}}
        data = {**data, "params": tool.get("params", data.get("params"))}
        tool = tool.get("tool") or tool.get("name")
    tool = tool.strip() if isinstance(tool, str) else ""

    if not tool and not done:
        logger.debug("response has no action and is not done")
        return None

    params = data.get("params")
    blocker = data.get("blocker")
    return Action(
        tool_name=tool,
        parameters=params if isinstance(params, dict) else {},
        done=done,
        progress_note=str(data.get("progress_note") or ""),
        screen=str(data.get("screen") or ""),
        blocker=blocker if isinstance(blocker, str) and blocker.strip() else None,
    )


# ---------------------------------------------------------------------------
# Fingerprints
# ---------------------------------------------------------------------------


def _round_half_away(value: float, tolerance: int) -> int:
    scaled = abs(value) / tolerance
    bucket = math.floor(scaled + 0.5)
    return int(math.copysign(bucket * tolerance, value)) if bucket else 0


def _fingerprint_value(key: str, value: Any, tolerance: int) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if key in COORDINATE_KEYS and isinstance(value, (int, float)):
        return str(_round_half_away(float(value), tolerance))
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value
    if value is None:
        return "null"
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def build_fingerprint(tool: str, params: dict[str, Any], tolerance: int = 10) -> str:
    """'<tool>|k=v&k=v' with sorted keys and x/y bucketed to the tolerance."""
    parts = [f"{key}={_fingerprint_value(key, params[key], tolerance)}" for key in sorted(params)]
    return f"{tool}|{'&'.join(parts)}"


# ---------------------------------------------------------------------------
# Sleeping
# ---------------------------------------------------------------------------


async def cancellable_sleep(seconds: float, cancel_event: asyncio.Event) -> bool:
    """Wait `seconds`. False when the cancel event fired first."""
    if cancel_event.is_set():
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return True
    return False


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


class ReactiveLoop:
    """
    One run of the observe -> think -> act cycle. Build a new loop per run;
    a cancel requested before run() starts still applies.

    Example:
        loop = ReactiveLoop(config, transport, ScreenCapture(), dispatcher)
        result = await loop.run("Open Calculator", callbacks=RunCallbacks(on_message=print))
    """

    def __init__(
        self,
        config: AgentConfig,
        transport: Transport,
        capture: Any,
        dispatcher: ToolDispatcher,
        sleep: Sleep | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._capture = capture
        self._dispatcher = dispatcher
        self._sleep = sleep or cancellable_sleep
        self._cancel_event = asyncio.Event()
        self._last_model_error = ""

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def _pause(self, seconds: float) -> None:
        try:
            completed = await self._sleep(seconds, self._cancel_event)
        except asyncio.CancelledError:
            self._cancel_event.set()
            completed = False
        if not completed:
            raise _RunCancelled()

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _fail(self, state: RunState, reason: str) -> None:
        state.is_failed = True
        state.is_complete = False
        state.completion_reason = reason

    def _is_stuck(self, state: RunState) -> bool:
        if state.consecutive_same_actions >= self._config.repeat_threshold:
            return True
        if not state.last_fingerprint:
            return False
        repeats = state.recent_fingerprints.count(state.last_fingerprint)
        return repeats >= self._config.window_repeat_threshold

    def _record_fingerprint(self, state: RunState, fingerprint: str) -> None:
        if fingerprint == state.last_fingerprint:
            state.consecutive_same_actions += 1
        else:
            state.consecutive_same_actions = 1
        state.last_fingerprint = fingerprint
        state.recent_fingerprints = (state.recent_fingerprints + [fingerprint])[
            -self._config.fingerprint_window :
        ]

    def _add_progress(self, state: RunState, line: str) -> None:
        state.progress_lines = (state.progress_lines + [line])[-self._config.progress_log_size :]

    @staticmethod
    def _seed_from_replay(state: RunState, resume: ReplayedRunState, limit: int) -> None:
        state.iteration = resume.iteration_count
        state.progress_lines = list(resume.progress_lines)[-limit:]
        state.input_tokens = resume.input_tokens
        state.output_tokens = resume.output_tokens
        if resume.tool_events:
            last = resume.tool_events[-1]
            result = last.result or ""
            state.last_action = LastAction(
                tool_name=last.tool,
                summary=f"ERROR: {result[:100]}" if last.is_error else result[:100],
                succeeded=not last.is_error,
                fingerprint="",
            )

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    async def _observe(
        self, state: RunState, ctx: ToolContext, callbacks: RunCallbacks, journal: RunJournal | None
    ) -> Observation | None:
        callbacks.state(AgentState.CAPTURING)
        try:
            observation = await self._capture.capture(
                ctx.target_pid,
                self._config.screenshot_max_dimension,
                self._config.screenshot_quality,
            )
        except Exception as exc:
            logger.warning("capture failed (iteration %d): %s", state.iteration, exc)
            ctx.journal_event(
                JournalEvent.iteration_start(state.iteration, reason=f"Screen capture failed: {exc}")
            )
            callbacks.message(f"Screenshot error: {exc}")
            state.consecutive_failures += 1
            if state.consecutive_failures >= self._config.max_consecutive_failures:
                self._fail(
                    state,
                    f"Screen capture failed {self._config.max_consecutive_failures} times in a row: {exc}",
                )
            return None

        name = None
        if self._config.save_observations and journal is not None:
            extension = "png" if observation.media_type == "image/png" else "jpg"
            try:
                name = journal.save_observation(observation.image, f"iter{state.iteration}.{extension}")
            except OSError as exc:
                logger.warning("could not save observation: %s", exc)
        ctx.observation = observation
        ctx.journal_event(JournalEvent.iteration_start(state.iteration, observation=name))
        return observation

    # ------------------------------------------------------------------
    # Model call
    # ------------------------------------------------------------------

    async def _call_model(
        self, system_prompt: str, goal: str, observation: Observation, callbacks: RunCallbacks
    ) -> LLMResponse | None:
        """One model call, retried per the error's strategy. None once retries are exhausted."""
        message = user_message(
            f"Goal: {goal}",
            base64.b64encode(observation.image).decode("ascii"),
            observation.media_type,
        )
        attempt = 0
        while True:
            try:
                return await self._transport.send(
                    [message], system_prompt, [], self._config.model, self._config.max_tokens
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                classification = classify(exc)
                delay = strategy_for(classification).next_delay(attempt)
                self._last_model_error = describe(exc)
                logger.warning(
                    "model call failed (%s, attempt %d): %s", classification.kind.value, attempt, exc
                )
                if delay is None:
                    return None
                callbacks.message(f"{self._last_model_error} Retrying in {delay:g}s.")
                await self._pause(delay)
                attempt += 1

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        goal: str,
        target_pid: int | None = None,
        callbacks: RunCallbacks | None = None,
        journal: RunJournal | None = None,
        context: str = "",
        resume: ReplayedRunState | None = None,
        run_id: str | None = None,
    ) -> RunResult:
        """
        Drive one run to a terminal state.

        Returns a RunResult in all cases. Cancellation, budget exhaustion and
        unexpected errors all resolve to a failed result with a readable summary.
        """
        callbacks = callbacks or RunCallbacks()
        cancelled = False

        if resume is not None:
            goal = resume.command or goal
            run_id = resume.run_id
        state = RunState(run_id=run_id or (journal.run_id if journal else new_run_id()), goal=goal)
        ctx = ToolContext(state.run_id, goal, callbacks=callbacks, journal=journal, target_pid=target_pid)
        self._dispatcher.gate.start_run(state.run_id)

        if resume is not None:
            self._seed_from_replay(state, resume, self._config.progress_log_size)
            ctx.journal_event(
                JournalEvent.iteration_start(state.iteration, reason="Resumed after restart")
            )
            callbacks.message(f"Resuming run {state.run_id} at iteration {state.iteration}.")

        try:
            await self._iterate(state, ctx, callbacks, journal, context)
        except _RunCancelled:
            cancelled = True
        except asyncio.CancelledError:
            # Task cancellation is treated like a user cancel; the run still
            # gets its terminal event.
            cancelled = True
        except Exception as exc:
            logger.exception("run %s crashed", state.run_id)
            self._fail(state, f"The run stopped because of an unexpected error: {exc}.")

        if cancelled or (self.is_cancelled and not (state.is_complete or state.is_failed)):
            cancelled = True
            self._fail(state, "Cancelled by user.")

        if not state.is_complete and not state.is_failed:
            self._fail(
                state,
                f"Reached maximum iterations ({self._config.max_iterations}) without completing the goal.",
            )
            callbacks.message("Max iterations reached.")

        return self._finish(state, ctx, callbacks, journal, cancelled)

    async def _iterate(
        self,
        state: RunState,
        ctx: ToolContext,
        callbacks: RunCallbacks,
        journal: RunJournal | None,
        context: str,
    ) -> None:
        max_failures = self._config.max_consecutive_failures

        while state.iteration < self._config.max_iterations:
            # ── Step 1: Cancellation ─────────────────────────────────────
            if self.is_cancelled:
                raise _RunCancelled()

            # ── Step 2: Observe ──────────────────────────────────────────
            state.iteration += 1
            ctx.iteration = state.iteration
            observation = await self._observe(state, ctx, callbacks, journal)
            if observation is None:
                if state.is_failed:
                    return
                await self._pause(self._config.iteration_pause)
                continue

            # ── Step 3: Stuck detection ──────────────────────────────────
            stuck = self._is_stuck(state)
            if stuck and not state.escape_active:
                reason = f"Repeated action detected: {state.last_fingerprint}"
                ctx.journal_event(JournalEvent.stuck(reason, iteration=state.iteration))
                logger.info("run %s is stuck: %s", state.run_id, reason)
            state.escape_active = stuck

            # ── Step 4: Prompt ───────────────────────────────────────────
            escape = None
            if stuck:
                tool = state.last_action.tool_name if state.last_action else "the same action"
                escape = ESCAPE_NOTE.format(tool=tool)
            system_prompt = build_system_prompt(
                state,
                self._config.max_iterations,
                self._dispatcher.available_actions(),
                context,
                escape,
            )

            # ── Step 5: Think ────────────────────────────────────────────
            callbacks.state(AgentState.THINKING)
            response = await self._call_model(system_prompt, state.goal, observation, callbacks)
            if response is None:
                state.consecutive_failures += 1
                callbacks.message(f"API error: {self._last_model_error}")
                if state.consecutive_failures >= max_failures:
                    self._fail(
                        state,
                        f"The model API failed {max_failures} times in a row: {self._last_model_error}",
                    )
                    return
                await self._pause(self._config.api_failure_pause)
                continue

            state.input_tokens += response.input_tokens
            state.output_tokens += response.output_tokens

            # ── Step 6: Parse ────────────────────────────────────────────
            action = parse_action(response.text)
            if action is None:
                state.consecutive_failures += 1
                callbacks.message("Could not parse an action from the model response.")
                ctx.journal_event(
                    JournalEvent.iteration_end(
                        state.iteration,
                        is_error=True,
                        input_tokens=state.input_tokens,
                        output_tokens=state.output_tokens,
                    )
                )
                if state.consecutive_failures >= max_failures:
                    self._fail(
                        state,
                        f"Failed to parse a valid action from the model {max_failures} times in a row.",
                    )
                    return
                await self._pause(self._config.iteration_pause)
                continue

            # ── Step 7: Done? ────────────────────────────────────────────
            if action.done:
                state.is_complete = True
                state.completion_reason = action.progress_note or f"Goal achieved: {state.goal}"
                callbacks.message(f"Done: {state.completion_reason}")
                return

            # ── Step 8: Act ──────────────────────────────────────────────
            fingerprint = build_fingerprint(
                action.tool_name, action.parameters, self._config.fingerprint_tolerance
            )
            self._record_fingerprint(state, fingerprint)

            logger.info(
                "iteration %d: %s %s",
                state.iteration,
                action.tool_name,
                json.dumps(action.parameters, default=str)[:200],
            )
            result = await self._dispatcher.dispatch(action.tool_name, action.parameters, ctx)

            # ── Step 9: Evaluate ─────────────────────────────────────────
            note = action.progress_note or action.tool_name
            if result.is_error:
                state.consecutive_failures += 1
                logger.info(
                    "iteration %d: %s failed (%s): %s",
                    state.iteration,
                    action.tool_name,
                    classify_tool_error(result.result),
                    result.result[:200],
                )
                summary = f"ERROR: {result.result[:100]}"
                line = f"[{state.iteration}] {action.tool_name} FAILED: {result.result[:80]}"
                callbacks.message(f"Tool error ({action.tool_name}): {result.result}")
            else:
                state.consecutive_failures = 0
                summary = note
                line = f"[{state.iteration}] {note}"
                callbacks.message(f"{action.tool_name}: {note}")

            state.last_action = LastAction(
                tool_name=action.tool_name,
                summary=summary,
                succeeded=not result.is_error,
                fingerprint=fingerprint,
            )
            self._add_progress(state, line)

            ctx.journal_event(
                JournalEvent.iteration_end(
                    state.iteration,
                    progress_note=line,
                    fingerprint=fingerprint,
                    is_error=result.is_error,
                    input_tokens=state.input_tokens,
                    output_tokens=state.output_tokens,
                )
            )

            if result.is_error and state.consecutive_failures >= max_failures:
                self._fail(
                    state,
                    f"Actions failed {max_failures} times in a row. Last error: {result.result[:200]}",
                )
                return

            # ── Step 10: Pause ───────────────────────────────────────────
            await self._pause(self._config.iteration_pause)

    def _finish(
        self,
        state: RunState,
        ctx: ToolContext,
        callbacks: RunCallbacks,
        journal: RunJournal | None,
        cancelled: bool,
    ) -> RunResult:
        result = RunResult.from_state(state)

        if state.is_complete:
            event = JournalEvent.complete(
                result.summary, result.final_score, state.input_tokens, state.output_tokens
            )
        else:
            event = JournalEvent.fail(
                result.summary, cancelled, state.input_tokens, state.output_tokens
            )
        ctx.journal_event(event)

        audit = self._dispatcher.gate.end_run()
        if journal is not None and audit:
            try:
                journal.write_audit(audit)
            except OSError as exc:
                logger.error("could not write audit log: %s", exc)

        logger.info(
            "run %s finished: success=%s iterations=%d tokens=%d/%d",
            state.run_id,
            result.success,
            result.iterations,
            result.input_tokens,
            result.output_tokens,
        )
        callbacks.state(AgentState.DONE if result.success else AgentState.ERROR)
        return result
