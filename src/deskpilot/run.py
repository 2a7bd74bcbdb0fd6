# run.py
# Entry point. Config and wiring only. No logic lives here.
#
# Swap model strings for any OpenRouter-supported model.
# https://openrouter.ai/models
#
#   deskpilot "Open Calculator and compute 12*7"
#   deskpilot --resume
#   deskpilot --runs
#   deskpilot --cleanup

import argparse
import asyncio
import logging

from rich.logging import RichHandler

from deskpilot import display
from deskpilot.config import AgentConfig, api_key
from deskpilot.desktop import InputExecutor, ScreenCapture
from deskpilot.dispatcher import RunCallbacks, ToolDispatcher
from deskpilot.journal import RunJournal
from deskpilot.orchestrator import Orchestrator
from deskpilot.plugins import PluginRegistry
from deskpilot.safety import SafetyGate
from deskpilot.tools import LaunchExecutor, ShellExecutor, VaultExecutor
from deskpilot.transport import OpenRouterTransport


def build_orchestrator(config: AgentConfig) -> Orchestrator:
    transport = OpenRouterTransport(api_key=api_key(), base_url=config.base_url)
    plugins = PluginRegistry(
        config.plugins_dir,
        config.plugin_data_dir,
        timeout=config.plugin_timeout,
        max_output=config.plugin_max_output,
    )
    plugins.load_all()

    capture = ScreenCapture()
    dispatcher = ToolDispatcher(
        config,
        SafetyGate(config, transport),
        executors={
            "input": InputExecutor(),
            "launch": LaunchExecutor(),
            "shell": ShellExecutor(timeout=config.shell_timeout),
            "vault": VaultExecutor(config.vault_dir),
        },
        capture=capture,
        plugins=plugins,
    )
    return Orchestrator(config, transport, capture, dispatcher)


def _callbacks() -> RunCallbacks:
    return RunCallbacks(
        on_state_change=display.state_changed,
        on_message=display.message,
        on_confirmation_needed=display.confirm,
    )


async def _run_goal(config: AgentConfig, goal: str) -> bool:
    orchestrator = build_orchestrator(config)
    display.goal_received(goal)
    result = await orchestrator.run(
        goal,
        on_state_change=display.state_changed,
        on_message=display.message,
        on_confirmation_needed=display.confirm,
        source="cli",
    )
    display.final_result(result)
    return result.success


async def _resume(config: AgentConfig) -> bool:
    orchestrator = build_orchestrator(config)
    results = await orchestrator.resume_incomplete(_callbacks())
    if not results:
        display.message("No interrupted runs to resume.")
    for result in results:
        display.final_result(result)
    return all(r.success for r in results)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="deskpilot", description="Desktop automation agent.")
    parser.add_argument("goal", nargs="?", help="Natural-language goal to carry out.")
    parser.add_argument("--resume", action="store_true", help="Resume or abandon interrupted runs.")
    parser.add_argument("--runs", action="store_true", help="List recent runs.")
    parser.add_argument("--cleanup", action="store_true", help="Apply run retention and show disk usage.")
    parser.add_argument(
        "--mode",
        choices=["standard", "autonomous", "yolo"],
        help="Permission mode (default: standard).",
    )
    parser.add_argument("--max-iterations", type=int, help="Override the iteration budget.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=display.console, rich_tracebacks=True, show_path=False)],
    )

    overrides = {}
    if args.mode:
        overrides["permission_mode"] = args.mode
    if args.max_iterations:
        overrides["max_iterations"] = args.max_iterations
    config = AgentConfig.from_env(**overrides)

    if args.runs:
        display.run_list(RunJournal.list_runs(config.runs_dir))
        return 0
    if args.cleanup:
        deleted = RunJournal.cleanup_old_runs(config.runs_dir)
        display.disk_usage(RunJournal.disk_usage(config.runs_dir), deleted)
        return 0

    display.banner(config.model, config.permission_mode)
    if args.resume:
        return 0 if asyncio.run(_resume(config)) else 1
    if not args.goal:
        display.halt("No goal given. Pass a goal, or use --resume, --runs or --cleanup.")
        return 2
    return 0 if asyncio.run(_run_goal(config, args.goal)) else 1


if __name__ == "__main__":
    raise SystemExit(main())
