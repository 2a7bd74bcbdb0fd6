# orchestrator.py
# Run lifecycle: accept a command, open its journal, run one ReactiveLoop,
# reply, close. Also resumes or abandons runs a crash left behind.
#
# One run at a time. A second command while busy gets a failed RunResult
# instead of queueing.

import logging
from typing import Any, Awaitable, Callable

from deskpilot.config import AgentConfig
from deskpilot.dispatcher import RunCallbacks, ToolDispatcher
from deskpilot.journal import JournalError, RunJournal, new_run_id
from deskpilot.loop import ReactiveLoop, Sleep
from deskpilot.models import Command, JournalEvent, ReplayedRunState, RunResult
from deskpilot.transport import Transport

logger = logging.getLogger(__name__)

BUSY_SUMMARY = "Another task is already running."
ContextProvider = Callable[[str], Awaitable[str]]


class Orchestrator:
    """
    Owns the single active run.

    Example:
        orchestrator = Orchestrator(config, transport, ScreenCapture(), dispatcher)
        result = await orchestrator.run("Open Calculator", on_message=print)
    """

    def __init__(
        self,
        config: AgentConfig,
        transport: Transport,
        capture: Any,
        dispatcher: ToolDispatcher,
        context_provider: ContextProvider | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._capture = capture
        self._dispatcher = dispatcher
        self._context_provider = context_provider
        self._sleep = sleep
        self._active: ReactiveLoop | None = None

    @property
    def is_running(self) -> bool:
        return self._active is not None

    def cancel(self) -> None:
        if self._active is not None:
            logger.info("cancel requested")
            self._active.cancel()

    # ------------------------------------------------------------------
    # Caller surface
    # ------------------------------------------------------------------

    async def run(
        self,
        goal: str,
        target_pid: int | None = None,
        on_state_change: Callable | None = None,
        on_message: Callable[[str], Any] | None = None,
        on_confirmation_needed: Callable[[str], Awaitable[bool]] | None = None,
        source: str = "chat",
    ) -> RunResult:
        callbacks = RunCallbacks(
            on_state_change=on_state_change,
            on_message=on_message,
            on_confirmation_needed=on_confirmation_needed,
        )
        if not goal.strip():
            return RunResult(run_id="", success=False, summary="No goal was given.", iterations=0)
        command = Command(text=goal.strip(), source=source, target_pid=target_pid)
        return await self.submit(command, callbacks)

    async def submit(self, command: Command, callbacks: RunCallbacks | None = None) -> RunResult:
        """Run a command and send the outcome to its reply channel, if any."""
        result = await self._execute(
            command.text, command.source, command.target_pid, callbacks or RunCallbacks()
        )
        if command.reply_channel is not None:
            await self._reply(command.reply_channel, result)
        return result

    async def resume_incomplete(self, callbacks: RunCallbacks | None = None) -> list[RunResult]:
        """
        Resume every run that has no terminal event.

        Runs idle longer than `stale_run_age` are marked abandoned instead.
        """
        callbacks = callbacks or RunCallbacks()
        runs_dir = self._config.runs_dir
        results: list[RunResult] = []

        for run_id in RunJournal.find_incomplete(runs_dir):
            if RunJournal.is_stale(runs_dir, run_id, self._config.stale_run_age):
                RunJournal.mark_abandoned(
                    runs_dir, run_id, "Run was interrupted and is too old to resume."
                )
                logger.info("abandoned stale run %s", run_id)
                callbacks.message(f"Abandoned stale run {run_id}.")
                continue

            state = RunJournal.replay_run_state(runs_dir, run_id)
            if state is None or not state.command:
                RunJournal.mark_abandoned(runs_dir, run_id, "Run has no recoverable command.")
                callbacks.message(f"Abandoned run {run_id}: nothing to resume.")
                continue

            results.append(
                await self._execute(state.command, "resume", state.target_pid, callbacks, resume=state)
            )
        return results

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load_context(self, goal: str) -> str:
        if self._context_provider is None:
            return ""
        try:
            return await self._context_provider(goal) or ""
        except Exception as exc:
            logger.warning("context provider failed: %s", exc)
            return ""

    def _open_journal(self, run_id: str, callbacks: RunCallbacks) -> RunJournal | None:
        journal = RunJournal(self._config.runs_dir, run_id)
        try:
            journal.open()
        except JournalError as exc:
            logger.error("%s", exc)
            callbacks.message(f"Journal unavailable, this run cannot be resumed: {exc}")
            return None
        return journal

    async def _execute(
        self,
        goal: str,
        source: str,
        target_pid: int | None,
        callbacks: RunCallbacks,
        resume: ReplayedRunState | None = None,
    ) -> RunResult:
        if self._active is not None:
            callbacks.message(BUSY_SUMMARY)
            return RunResult(run_id="", success=False, summary=BUSY_SUMMARY, iterations=0)

        loop = ReactiveLoop(
            self._config, self._transport, self._capture, self._dispatcher, sleep=self._sleep
        )
        self._active = loop

        run_id = resume.run_id if resume is not None else new_run_id()
        journal = self._open_journal(run_id, callbacks)
        try:
            if journal is not None and resume is None:
                journal.append(JournalEvent.created(goal, source, target_pid))
            logger.info("run %s started (%s): %s", run_id, source, goal)
            context = await self._load_context(goal)
            return await loop.run(
                goal,
                target_pid=target_pid,
                callbacks=callbacks,
                journal=journal,
                context=context,
                resume=resume,
                run_id=run_id,
            )
        finally:
            self._active = None
            if journal is not None:
                journal.close()

    @staticmethod
    async def _reply(channel: Any, result: RunResult) -> None:
        prefix = "Done" if result.success else "Failed"
        try:
            await channel.send_text(f"{prefix}: {result.summary}")
        except Exception as exc:
            logger.warning("reply channel failed: %s", exc)
