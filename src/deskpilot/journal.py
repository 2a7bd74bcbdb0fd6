# journal.py
# Append-only, event-sourced run journal.
#
#   <runs_dir>/<run_id>/journal.jsonl    one JournalEvent per line
#   <runs_dir>/<run_id>/iter3.jpg        observations, referenced by name
#   <runs_dir>/<run_id>/audit.jsonl      safety gate decisions, written at run end
#
# The journal is the sole source of truth for recovery: everything the
# orchestrator knows about an interrupted run comes from fold_events().

import logging
import os
import shutil
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import IO, Iterable

from pydantic import BaseModel, ValidationError

from deskpilot.models import EventType, JournalEvent, ReplayedRunState, ToolCallSummary

logger = logging.getLogger(__name__)

JOURNAL_NAME = "journal.jsonl"
AUDIT_NAME = "audit.jsonl"
PROGRESS_LIMIT = 10


class JournalError(Exception):
    """Raised when the journal file cannot be opened or written."""


def new_run_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:6]}"


# ---------------------------------------------------------------------------
# Pure replay
# ---------------------------------------------------------------------------


def fold_events(
    run_id: str, events: Iterable[JournalEvent], progress_limit: int = PROGRESS_LIMIT
) -> ReplayedRunState | None:
    """
    Fold an ordered event sequence into a ReplayedRunState.

    Pure and deterministic: the same events always give the same state.
    Token fields on events are running totals, so the last one seen wins.
    Returns None for an empty sequence.
    """
    events = list(events)
    if not events:
        return None

    command, source, target_pid = "", "chat", None
    iteration_count = 0
    last_score: int | None = None
    tools: list[ToolCallSummary] = []
    progress: list[str] = []
    is_complete = is_failed = False
    reason = ""
    input_tokens = output_tokens = 0

    for event in events:
        if event.iteration is not None:
            iteration_count = max(iteration_count, event.iteration)
        if event.input_tokens is not None:
            input_tokens = event.input_tokens
        if event.output_tokens is not None:
            output_tokens = event.output_tokens

        if event.type is EventType.RUN_CREATED:
            command = event.command or ""
            source = event.source or "chat"
            target_pid = event.target_pid
        elif event.type is EventType.TOOL_EXECUTED:
            tools.append(
                ToolCallSummary(
                    tool=event.tool or "unknown",
                    params=event.tool_params,
                    result=event.tool_result,
                    is_error=bool(event.is_error),
                )
            )
        elif event.type is EventType.ITERATION_END:
            if event.progress_note:
                progress = (progress + [event.progress_note])[-progress_limit:]
            if event.score is not None:
                last_score = event.score
        elif event.type is EventType.RUN_COMPLETE:
            is_complete, is_failed = True, False
            reason = event.summary or ""
            if event.score is not None:
                last_score = event.score
        elif event.type in (EventType.RUN_FAIL, EventType.RUN_ABANDONED):
            is_complete, is_failed = False, True
            reason = event.reason or ""

    return ReplayedRunState(
        run_id=run_id,
        command=command,
        source=source,
        target_pid=target_pid,
        iteration_count=iteration_count,
        last_score=last_score,
        tool_events=tuple(tools),
        progress_lines=tuple(progress),
        is_complete=is_complete,
        is_failed=is_failed,
        completion_reason=reason,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        last_event_at=events[-1].timestamp,
    )


def terminal_state_of(events: list[JournalEvent]) -> str:
    """completed, abandoned, cancelled, stuck, failed or incomplete."""
    terminal = [e for e in events if e.is_terminal]
    if not terminal:
        return "incomplete"
    types = {e.type for e in terminal}
    if EventType.RUN_COMPLETE in types:
        return "completed"
    if EventType.RUN_ABANDONED in types:
        return "abandoned"
    if any(e.type is EventType.RUN_FAIL and e.cancelled for e in terminal):
        return "cancelled"
    if any(e.type is EventType.RUN_STUCK for e in events):
        return "stuck"
    return "failed"


# ---------------------------------------------------------------------------
# Retention and reporting models
# ---------------------------------------------------------------------------


class RetentionPolicy(BaseModel):
    """Days each terminal state is kept before the run directory is deleted."""

    completed_days: int = 30
    failed_days: int = 7
    abandoned_days: int = 3
    incomplete_days: int = 1

    def max_age(self, state: str) -> timedelta:
        days = {
            "completed": self.completed_days,
            "failed": self.failed_days,
            "stuck": self.failed_days,
            "cancelled": self.failed_days,
            "abandoned": self.abandoned_days,
        }.get(state, self.incomplete_days)
        return timedelta(days=days)


class RunSummary(BaseModel):
    run_id: str
    command: str
    state: str
    iterations: int
    started_at: datetime | None = None
    last_event_at: datetime | None = None


class DiskUsage(BaseModel):
    total_bytes: int = 0
    run_count: int = 0
    observation_count: int = 0
    observation_bytes: int = 0


# ---------------------------------------------------------------------------
# Journal
# ---------------------------------------------------------------------------


class RunJournal:
    """
    Per-run journal writer plus class-level readers over a runs directory.

    Example:
        journal = RunJournal(config.runs_dir, run_id)
        journal.open()
        journal.append(JournalEvent.created("open Calculator", "cli"))
        journal.close()
        state = RunJournal.replay_run_state(config.runs_dir, run_id)
    """

    def __init__(self, runs_dir: Path, run_id: str) -> None:
        self.runs_dir = Path(runs_dir)
        self.run_id = run_id
        self._handle: IO[str] | None = None

    @property
    def directory(self) -> Path:
        return self.runs_dir / self.run_id

    @property
    def path(self) -> Path:
        return self.directory / JOURNAL_NAME

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def open(self) -> None:
        if self._handle is not None:
            return
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._handle = open(self.path, "a", encoding="utf-8")
        except OSError as exc:
            raise JournalError(f"Cannot open journal {self.path}: {exc}") from exc

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def append(self, event: JournalEvent) -> None:
        """Write one event and force it to disk before returning."""
        if self._handle is None:
            raise JournalError(f"Journal for run {self.run_id} is not open.")
        try:
            self._handle.write(event.model_dump_json(exclude_none=True) + "\n")
            self._handle.flush()
            os.fsync(self._handle.fileno())
        except OSError as exc:
            raise JournalError(f"Cannot append to {self.path}: {exc}") from exc

    def save_observation(self, data: bytes, name: str) -> str:
        """Store an observation beside the journal; returns the name to reference."""
        self.directory.mkdir(parents=True, exist_ok=True)
        (self.directory / name).write_bytes(data)
        return name

    def write_audit(self, entries: Iterable[BaseModel]) -> int:
        entries = list(entries)
        if not entries:
            return 0
        self.directory.mkdir(parents=True, exist_ok=True)
        with open(self.directory / AUDIT_NAME, "a", encoding="utf-8") as fh:
            for entry in entries:
                fh.write(entry.model_dump_json() + "\n")
        return len(entries)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @staticmethod
    def replay(runs_dir: Path, run_id: str) -> list[JournalEvent]:
        """All parseable events of a run, in file order. Bad lines are skipped."""
        path = Path(runs_dir) / run_id / JOURNAL_NAME
        try:
            raw_lines = path.read_bytes().split(b"\n")
        except FileNotFoundError:
            return []
        events: list[JournalEvent] = []
        for number, raw in enumerate(raw_lines, start=1):
            # Decoded per line: a crash can cut the last line inside a multibyte character.
            try:
                line = raw.decode("utf-8")
            except UnicodeDecodeError:
                logger.warning("skipping undecodable line %d in %s", number, path)
                continue
            if not line.strip():
                continue
            try:
                events.append(JournalEvent.model_validate_json(line))
            except ValidationError:
                logger.warning("skipping unparseable line %d in %s", number, path)
        return events

    @staticmethod
    def run_ids(runs_dir: Path) -> list[str]:
        runs_dir = Path(runs_dir)
        if not runs_dir.is_dir():
            return []
        return sorted(p.name for p in runs_dir.iterdir() if p.is_dir())

    @classmethod
    def find_incomplete(cls, runs_dir: Path) -> list[str]:
        """Runs with at least one event and no terminal event."""
        incomplete = []
        for run_id in cls.run_ids(runs_dir):
            events = cls.replay(runs_dir, run_id)
            if events and not any(e.is_terminal for e in events):
                incomplete.append(run_id)
        return incomplete

    @classmethod
    def terminal_state(cls, runs_dir: Path, run_id: str) -> str:
        return terminal_state_of(cls.replay(runs_dir, run_id))

    @classmethod
    def replay_run_state(cls, runs_dir: Path, run_id: str) -> ReplayedRunState | None:
        return fold_events(run_id, cls.replay(runs_dir, run_id))

    @classmethod
    def is_stale(cls, runs_dir: Path, run_id: str, max_age: float = 3600.0) -> bool:
        events = cls.replay(runs_dir, run_id)
        if not events:
            return True
        age = datetime.now(timezone.utc) - events[-1].timestamp
        return age.total_seconds() > max_age

    @classmethod
    def mark_abandoned(cls, runs_dir: Path, run_id: str, reason: str) -> None:
        journal = cls(runs_dir, run_id)
        journal.open()
        try:
            journal.append(JournalEvent.abandoned(reason))
        finally:
            journal.close()

    @classmethod
    def list_runs(cls, runs_dir: Path, limit: int = 10) -> list[RunSummary]:
        """Most recent runs first."""
        summaries = []
        for run_id in cls.run_ids(runs_dir):
            events = cls.replay(runs_dir, run_id)
            if not events:
                continue
            folded = fold_events(run_id, events)
            summaries.append(
                RunSummary(
                    run_id=run_id,
                    command=folded.command,
                    state=terminal_state_of(events),
                    iterations=folded.iteration_count,
                    started_at=events[0].timestamp,
                    last_event_at=folded.last_event_at,
                )
            )
        summaries.sort(key=lambda s: s.started_at, reverse=True)
        return summaries[:limit]

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    @staticmethod
    def _observation_files(directory: Path) -> list[Path]:
        return sorted(
            p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in (".jpg", ".jpeg", ".png")
        )

    @classmethod
    def cleanup_old_runs(
        cls, runs_dir: Path, policy: RetentionPolicy | None = None, now: datetime | None = None
    ) -> int:
        """Delete runs past their retention window. Returns how many were deleted."""
        policy = policy or RetentionPolicy()
        now = now or datetime.now(timezone.utc)
        deleted = 0
        for run_id in cls.run_ids(runs_dir):
            directory = Path(runs_dir) / run_id
            events = cls.replay(runs_dir, run_id)
            if not events:
                shutil.rmtree(directory, ignore_errors=True)
                deleted += 1
                continue

            state = terminal_state_of(events)
            if state == "completed":
                for path in cls._observation_files(directory)[1:-1]:
                    path.unlink(missing_ok=True)
            elif state == "abandoned":
                for path in cls._observation_files(directory):
                    path.unlink(missing_ok=True)

            if now - events[-1].timestamp > policy.max_age(state):
                shutil.rmtree(directory, ignore_errors=True)
                deleted += 1
        logger.info("retention removed %d runs from %s", deleted, runs_dir)
        return deleted

    @classmethod
    def disk_usage(cls, runs_dir: Path) -> DiskUsage:
        usage = DiskUsage()
        for run_id in cls.run_ids(runs_dir):
            usage.run_count += 1
            for path in (Path(runs_dir) / run_id).iterdir():
                if not path.is_file():
                    continue
                size = path.stat().st_size
                usage.total_bytes += size
                if path.suffix.lower() in (".jpg", ".jpeg", ".png"):
                    usage.observation_count += 1
                    usage.observation_bytes += size
        return usage
