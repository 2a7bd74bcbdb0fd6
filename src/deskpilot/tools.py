# tools.py
# Built-in tool registry and the non-input executors.
# The dispatcher routes by BUILTIN_TOOLS and never calls these helpers directly.
#
# Every executor answers `await execute(name, params) -> (text, is_error)`.
# Ordinary failures come back as (message, True); they never raise.

import asyncio
import logging
import os
import shutil
import sys
import webbrowser
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 4000


class ToolSpec(BaseModel):
    name: str
    category: str
    description: str
    args: str


def _spec(name: str, category: str, description: str, args: str) -> tuple[str, ToolSpec]:
    return name, ToolSpec(name=name, category=category, description=description, args=args)


BUILTIN_TOOLS: dict[str, ToolSpec] = dict(
    [
        _spec("click", "input", "Left click at a screen position",
              '{"x": <int>, "y": <int>, "element_description": "<string, optional>"}'),
        _spec("right_click", "input", "Right click at a screen position",
              '{"x": <int>, "y": <int>, "element_description": "<string, optional>"}'),
        _spec("double_click", "input", "Double click at a screen position",
              '{"x": <int>, "y": <int>, "element_description": "<string, optional>"}'),
        _spec("type_text", "input", "Type text into the focused field", '{"text": "<string>"}'),
        _spec("press_key", "input", "Press a key, optionally with modifiers",
              '{"key": "<string>", "modifiers": ["command"|"shift"|"option"|"control"]}'),
        _spec("scroll", "input", "Scroll at a position",
              '{"direction": "up"|"down", "amount": <int>, "x": <int, optional>, "y": <int, optional>}'),
        _spec("open_url", "launch", "Open a URL in the default browser", '{"url": "<string>"}'),
        _spec("open_application", "launch", "Launch or focus an application", '{"name": "<string>"}'),
        _spec("run_shell_command", "shell", "Run a shell command", '{"command": "<string>"}'),
        _spec("run_applescript", "shell", "Run an AppleScript (macOS only)", '{"script": "<string>"}'),
        _spec("vault_read", "vault", "Read a note from the vault", '{"path": "<string>"}'),
        _spec("vault_write", "vault", "Write or append a note in the vault",
              '{"path": "<string>", "content": "<string>", "append": <bool, optional>}'),
        _spec("vault_list", "vault", "List notes in a vault folder", '{"path": "<string, optional>"}'),
        _spec("take_screenshot", "capture", "Capture a fresh screenshot", "{}"),
    ]
)


def _truncate(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    return text[:limit] + "\n…(truncated)" if len(text) > limit else text


# ---------------------------------------------------------------------------
# Shell
# ---------------------------------------------------------------------------


class ShellExecutor:
    """run_shell_command and run_applescript, bounded by a hard timeout."""

    def __init__(self, timeout: float = 30.0) -> None:
        self._timeout = timeout

    async def execute(self, name: str, params: dict[str, Any]) -> tuple[str, bool]:
        if name == "run_shell_command":
            command = str(params.get("command", "")).strip()
            if not command:
                return "Error: no command provided.", True
            return await self._run_shell(command)
        if name == "run_applescript":
            script = str(params.get("script", "")).strip()
            if not script:
                return "Error: no script provided.", True
            osascript = shutil.which("osascript")
            if osascript is None:
                return "run_applescript requires macOS (osascript not found).", True
            return await self._run_exec([osascript, "-e", script])
        return f"Unknown shell tool: {name}", True

    async def _run_shell(self, command: str) -> tuple[str, bool]:
        logger.debug("shell: %s", command)
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            return f"Command failed to start: {exc}", True
        return await self._collect(process)

    async def _run_exec(self, argv: list[str]) -> tuple[str, bool]:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            return f"Command failed to start: {exc}", True
        return await self._collect(process)

    async def _collect(self, process: asyncio.subprocess.Process) -> tuple[str, bool]:
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return f"Command timed out after {self._timeout:g}s and was killed.", True

        output = _truncate(stdout.decode("utf-8", errors="replace").strip())
        if process.returncode != 0:
            return f"Exit code {process.returncode}\n{output}".strip(), True
        return output or "(no output)", False


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------


class VaultExecutor:
    """Plain-text notes under a single root directory. Paths may not escape it."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    def _resolve(self, relative: str) -> Path | None:
        root = self._root.resolve()
        target = (root / relative.lstrip("/")).resolve()
        if target != root and root not in target.parents:
            return None
        return target

    async def execute(self, name: str, params: dict[str, Any]) -> tuple[str, bool]:
        if name == "vault_read":
            return self._read(str(params.get("path", "")).strip())
        if name == "vault_write":
            return self._write(
                str(params.get("path", "")).strip(),
                str(params.get("content", "")),
                bool(params.get("append", False)),
            )
        if name == "vault_list":
            return self._list(str(params.get("path", "")).strip())
        return f"Unknown vault tool: {name}", True

    def _read(self, path: str) -> tuple[str, bool]:
        if not path:
            return "Error: no path provided.", True
        target = self._resolve(path)
        if target is None:
            return f"SECURITY BLOCK: '{path}' is outside the vault.", True
        if not target.is_file():
            return f"Note not found: {path}", True
        return _truncate(target.read_text(encoding="utf-8", errors="replace")), False

    def _write(self, path: str, content: str, append: bool) -> tuple[str, bool]:
        if not path:
            return "Error: no path provided.", True
        target = self._resolve(path)
        if target is None:
            return f"SECURITY BLOCK: '{path}' is outside the vault.", True
        if target.is_dir():
            return f"Error: {path} is a folder.", True
        os.makedirs(target.parent, exist_ok=True)
        with open(target, "a" if append else "w", encoding="utf-8") as fh:
            fh.write(content)
        verb = "Appended" if append else "Wrote"
        return f"{verb} {len(content)} bytes to {path}.", False

    def _list(self, path: str) -> tuple[str, bool]:
        target = self._resolve(path or ".")
        if target is None:
            return f"SECURITY BLOCK: '{path}' is outside the vault.", True
        if not target.is_dir():
            return f"Folder not found: {path or '/'}", True
        entries = sorted(
            f"{p.name}/" if p.is_dir() else p.name for p in target.iterdir() if not p.name.startswith(".")
        )
        return "\n".join(entries) if entries else "(empty)", False


# ---------------------------------------------------------------------------
# Launch
# ---------------------------------------------------------------------------


class LaunchExecutor:
    """open_url and open_application for the current platform."""

    def __init__(self, timeout: float = 10.0) -> None:
        self._timeout = timeout

    async def execute(self, name: str, params: dict[str, Any]) -> tuple[str, bool]:
        if name == "open_url":
            return await self._open_url(str(params.get("url", "")).strip())
        if name == "open_application":
            return await self._open_application(str(params.get("name", "")).strip())
        return f"Unknown launch tool: {name}", True

    async def _open_url(self, url: str) -> tuple[str, bool]:
        if not url:
            return "Error: no URL provided.", True
        if urlparse(url).scheme not in ("http", "https", "file", "mailto"):
            url = "https://" + url
        opened = await asyncio.to_thread(webbrowser.open, url)
        if not opened:
            return f"No browser available to open {url}.", True
        return f"Opened {url}.", False

    async def _open_application(self, app: str) -> tuple[str, bool]:
        if not app:
            return "Error: no application name provided.", True

        if sys.platform == "darwin":
            argv = ["open", "-a", app]
        elif sys.platform == "win32":
            argv = ["cmd", "/c", "start", "", app]
        else:
            binary = shutil.which(app) or shutil.which(app.lower())
            if binary is None:
                return f"Application not found: {app}", True
            argv = [binary]

        logger.debug("launching %s via %s", app, argv[0])
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=sys.platform not in ("darwin", "win32"),
            )
        except OSError as exc:
            return f"Could not launch {app}: {exc}", True

        if argv[0] != "open" and argv[0] != "cmd":
            # Direct launch: the application keeps running on its own.
            return f"Launched {app}.", False

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            return f"Launching {app} is taking longer than {self._timeout:g}s.", True
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            return f"Could not open {app}: {detail or 'exit ' + str(process.returncode)}", True
        return f"Opened {app}.", False
