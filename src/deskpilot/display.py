# display.py
# All terminal output for the deskpilot CLI.
#
# This module owns presentation entirely. The loop never formats for the
# terminal; run.py wires these functions in as run callbacks.
#
# Colour language:
#   cyan    - scaffolding / run lifecycle
#   blue    - model thinking
#   yellow  - safety checkpoints and confirmations
#   green   - success / approved
#   red     - failures, denials, halts
#   magenta - actions being executed

import asyncio

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from deskpilot.journal import DiskUsage, RunSummary
from deskpilot.models import AgentState, RunResult

console = Console()

STATE_STYLE = {
    AgentState.CAPTURING: ("CAPTURE", "cyan"),
    AgentState.THINKING: ("THINK", "blue"),
    AgentState.EXECUTING: ("ACT", "magenta"),
    AgentState.AWAITING_CONFIRMATION: ("SAFETY", "yellow"),
}

RUN_STATE_STYLE = {
    "completed": "green",
    "failed": "red",
    "stuck": "red",
    "cancelled": "yellow",
    "abandoned": "dim",
    "incomplete": "cyan",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


def _size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{num_bytes} B"


# ---------------------------------------------------------------------------
# Run entry
# ---------------------------------------------------------------------------


def banner(model: str, mode: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]deskpilot[/bold cyan]\n"
            "[dim]Observe, think, act: one action per screenshot[/dim]\n\n"
            f"[dim]Model           :[/dim] [white]{model}[/white]\n"
            f"[dim]Permission mode :[/dim] [white]{mode}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def goal_received(goal: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW RUN[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{goal}[/white]",
            title=_label("GOAL", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Run callbacks
# ---------------------------------------------------------------------------


def state_changed(state: AgentState) -> None:
    style = STATE_STYLE.get(state)
    if style is None:
        return
    tag, color = style
    console.print(_label(tag, color), f"[{color}] {state.value.replace('_', ' ')}…[/{color}]")


def message(text: str) -> None:
    if text.startswith(("Tool error", "API error", "Screenshot error")):
        console.print(f"  [bold red]✗[/bold red] [red]{_mono(text, 200)}[/red]")
    elif text.startswith("Done:"):
        console.print(f"  [bold green]✓[/bold green] [green]{_mono(text, 200)}[/green]")
    elif text.startswith(("Could not parse", "Max iterations")):
        console.print(f"  [yellow]{_mono(text, 200)}[/yellow]")
    elif ":" in text.split(" ", 1)[0]:
        tool, note = text.split(":", 1)
        console.print(f"  [bold magenta]{tool}[/bold magenta][dim]:[/dim] [white]{_mono(note.strip())}[/white]")
    else:
        console.print(f"  [cyan]{_mono(text, 200)}[/cyan]")


async def confirm(prompt: str) -> bool:
    console.print()
    console.print(
        Panel(
            f"[white]{prompt}[/white]",
            title=_label("CONFIRMATION REQUIRED", "yellow"),
            border_style="yellow",
            padding=(0, 2),
        )
    )
    approved = await asyncio.to_thread(Confirm.ask, "[yellow]Allow this action?[/yellow]", default=False, console=console)
    if approved:
        console.print("  [bold green]✓ Approved[/bold green]")
    else:
        console.print("  [bold red]✗ Denied[/bold red]")
    return approved


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(result: RunResult) -> None:
    color = "green" if result.success else "red"
    tag = "RESULT" if result.success else "FAILED"
    console.print()
    console.print(
        Panel(
            f"[white]{result.summary}[/white]\n\n"
            f"[dim]Run {result.run_id or '-'} · {result.iterations} iterations · "
            f"{result.input_tokens} in / {result.output_tokens} out tokens[/dim]",
            title=_label(tag, color),
            border_style=color,
            padding=(1, 2),
        )
    )
    console.print()


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{reason}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()


# ---------------------------------------------------------------------------
# Run history
# ---------------------------------------------------------------------------


def run_list(runs: list[RunSummary]) -> None:
    console.print()
    if not runs:
        console.print("[dim]  No runs recorded yet.[/dim]")
        return

    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Run", style="white", no_wrap=True)
    table.add_column("State", width=11)
    table.add_column("Iter", justify="right", width=5)
    table.add_column("Goal", style="dim white")

    for run in runs:
        color = RUN_STATE_STYLE.get(run.state, "white")
        table.add_row(run.run_id, f"[{color}]{run.state}[/{color}]", str(run.iterations), _mono(run.command, 60))

    console.print(Panel(table, title="[dim]RECENT RUNS[/dim]", border_style="dim", padding=(0, 1)))


def disk_usage(usage: DiskUsage, deleted: int | None = None) -> None:
    lines = [
        f"[dim]Runs         :[/dim] [white]{usage.run_count}[/white]",
        f"[dim]Total size   :[/dim] [white]{_size(usage.total_bytes)}[/white]",
        f"[dim]Observations :[/dim] [white]{usage.observation_count} "
        f"({_size(usage.observation_bytes)})[/white]",
    ]
    if deleted is not None:
        lines.insert(0, f"[green]Removed {deleted} expired runs.[/green]\n")
    console.print()
    console.print(Panel("\n".join(lines), title=_label("STORAGE", "cyan"), border_style="cyan", padding=(0, 2)))
