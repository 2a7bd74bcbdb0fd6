# plugins.py
# Out-of-process plugin registry and the stdin/stdout JSON protocol.
#
# Layout:
#   <plugins_dir>/<name>/plugin.json     manifest
#   <plugins_dir>/<name>/<entrypoint>    executable, relative, no ".."
#   <plugin_data_dir>/<name>/            per-plugin writable data
#
# Protocol (one request per process):
#   stdin  -> {"tool": str, "input": {...}, "context": {"pluginDir": str, "dataDir": str}}
#   stdout <- {"result": str, "isError": bool}      ("is_error" also accepted;
#                                                   "true"/"false" strings are parsed)
#
# Every failure mode (launch, timeout, oversized output, non-zero exit,
# non-JSON output) becomes an error ToolResult. Nothing here raises into
# the dispatcher.

import asyncio
import json
import logging
import os
import signal
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from deskpilot.models import PluginManifest, PluginToolDef, ToolResult

logger = logging.getLogger(__name__)

MANIFEST_NAME = "plugin.json"
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_OUTPUT = 1_048_576
_READ_CHUNK = 65_536


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ManifestError(Exception):
    """Raised when a plugin.json is missing fields or unsafe. The plugin is skipped."""


class PluginError(Exception):
    """Base class for plugin execution failures."""

    kind = "plugin error"


class PluginLaunchError(PluginError):
    kind = "launch failed"


class PluginTimeout(PluginError):
    kind = "timeout"


class PluginOutputTooLarge(PluginError):
    kind = "output too large"


class PluginExitError(PluginError):
    kind = "non-zero exit"


class PluginProtocolError(PluginError):
    kind = "invalid output"


# ---------------------------------------------------------------------------
# Manifest parsing
# ---------------------------------------------------------------------------


def parse_manifest(path: Path) -> PluginManifest:
    """
    Read and validate one plugin.json.
    Raises ManifestError with a one-line reason on any problem.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ManifestError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ManifestError(f"{path} must contain a JSON object")

    for field in ("name", "version", "description", "entrypoint"):
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            raise ManifestError(f"{path} is missing required field '{field}'")

    entrypoint = data["entrypoint"]
    if entrypoint.startswith("/") or Path(entrypoint).is_absolute():
        raise ManifestError(f"{path}: entrypoint must be relative, got {entrypoint!r}")
    if ".." in Path(entrypoint).parts:
        raise ManifestError(f"{path}: entrypoint may not contain '..'")

    tools: list[PluginToolDef] = []
    for index, raw in enumerate(data.get("tools") or []):
        if not isinstance(raw, dict):
            raise ManifestError(f"{path}: tool #{index} is not an object")
        name, description = raw.get("name"), raw.get("description")
        if not isinstance(name, str) or not name or not isinstance(description, str) or not description:
            raise ManifestError(f"{path}: tool #{index} needs a name and description")
        schema = raw.get("input_schema")
        if not isinstance(schema, dict) or not schema:
            raise ManifestError(f"{path}: tool '{name}' has an empty input_schema")
        if schema.get("type") != "object":
            raise ManifestError(f"{path}: tool '{name}' input_schema must have type 'object'")
        tools.append(
            PluginToolDef(name=name, description=description, input_schema=schema, plugin_name=data["name"])
        )

    permissions = data.get("permissions") or []
    if not isinstance(permissions, list) or not all(isinstance(p, str) for p in permissions):
        raise ManifestError(f"{path}: permissions must be a list of strings")

    try:
        return PluginManifest(
            name=data["name"],
            version=data["version"],
            description=data["description"],
            author=data.get("author"),
            entrypoint=entrypoint,
            permissions=permissions,
            tools=tools,
            directory=path.parent,
        )
    except ValidationError as exc:
        raise ManifestError(f"{path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


async def _read_capped(stream: asyncio.StreamReader, limit: int) -> bytes:
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return b"".join(chunks)
        total += len(chunk)
        if total > limit:
            raise PluginOutputTooLarge(f"stdout exceeded {limit} bytes")
        chunks.append(chunk)


async def _read_tail(stream: asyncio.StreamReader, keep: int = 4096) -> bytes:
    tail = b""
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return tail
        tail = (tail + chunk)[-keep:]


async def _invoke(
    manifest: PluginManifest,
    tool: str,
    tool_input: dict[str, Any],
    data_dir: Path,
    timeout: float,
    max_output: int,
) -> dict[str, Any]:
    entrypoint = manifest.entrypoint_path
    if not entrypoint.is_file() or not os.access(entrypoint, os.X_OK):
        raise PluginLaunchError(f"entrypoint is not an executable file: {entrypoint}")

    data_dir.mkdir(parents=True, exist_ok=True)
    request = json.dumps(
        {
            "tool": tool,
            "input": tool_input,
            "context": {"pluginDir": str(manifest.directory), "dataDir": str(data_dir)},
        }
    ).encode("utf-8")

    env = dict(os.environ)
    env["PLUGIN_DIR"] = str(manifest.directory)
    env["PLUGIN_DATA_DIR"] = str(data_dir)

    try:
        process = await asyncio.create_subprocess_exec(
            str(entrypoint),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(manifest.directory),
            env=env,
            start_new_session=True,
        )
    except OSError as exc:
        raise PluginLaunchError(str(exc)) from exc

    async def exchange() -> tuple[bytes, bytes, int]:
        try:
            process.stdin.write(request)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("plugin %s closed stdin early", manifest.name)
        finally:
            process.stdin.close()
        stdout, stderr = await asyncio.gather(
            _read_capped(process.stdout, max_output), _read_tail(process.stderr)
        )
        return stdout, stderr, await process.wait()

    try:
        stdout, stderr, returncode = await asyncio.wait_for(exchange(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        await _kill(process)
        raise PluginTimeout(f"no answer within {timeout:g}s, process killed") from exc
    except PluginOutputTooLarge:
        await _kill(process)
        raise

    if returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()[:500] or "(no stderr)"
        raise PluginExitError(f"exit {returncode}: {detail}")

    text = stdout.decode("utf-8", errors="replace").strip()
    if not text:
        raise PluginProtocolError("plugin returned no output")
    try:
        response = json.loads(text)
    except json.JSONDecodeError as exc:
        raise PluginProtocolError(f"stdout is not JSON: {text[:200]}") from exc
    if not isinstance(response, dict):
        raise PluginProtocolError("stdout must be a single JSON object")
    return response


async def _kill(process: asyncio.subprocess.Process) -> None:
    """Kill the plugin and anything it spawned (it leads its own process group)."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    await process.wait()


def _error_flag(value: Any) -> bool:
    """isError must be a JSON bool; "true" and "false" strings are read literally."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    if value is not None:
        logger.warning("plugin returned non-boolean isError %r, treating as error", value)
    return value is not None


async def run_plugin(
    manifest: PluginManifest,
    tool: str,
    tool_input: dict[str, Any],
    data_dir: Path,
    timeout: float = DEFAULT_TIMEOUT,
    max_output: int = DEFAULT_MAX_OUTPUT,
) -> ToolResult:
    """Run one plugin tool call and normalize the answer into a ToolResult."""
    logger.info("executing plugin tool %s from %s", tool, manifest.name)
    try:
        response = await _invoke(manifest, tool, tool_input, data_dir, timeout, max_output)
    except PluginError as exc:
        logger.warning("plugin %s tool %s failed (%s): %s", manifest.name, tool, exc.kind, exc)
        return ToolResult(result=f"Plugin {manifest.name} failed ({exc.kind}): {exc}", is_error=True)

    result = response.get("result")
    if result is None:
        result = "(no result field)"
    elif not isinstance(result, str):
        result = json.dumps(result)
    flag = response.get("isError", response.get("is_error", False))
    return ToolResult(result=result, is_error=_error_flag(flag))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class PluginStatus(BaseModel):
    name: str
    approved: bool
    enabled: bool
    error: str | None = None


class PluginRegistry:
    """
    Approved plugins and their tools, reloaded when the plugins directory changes.

    Example:
        registry = PluginRegistry(config.plugins_dir, config.plugin_data_dir)
        registry.approve("weather")
        registry.load_all()
        result = await registry.execute("get_weather", {"city": "Oslo"})
    """

    def __init__(
        self,
        plugins_dir: Path,
        data_dir: Path,
        state_file: Path | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_output: int = DEFAULT_MAX_OUTPUT,
    ) -> None:
        self._plugins_dir = Path(plugins_dir)
        self._data_dir = Path(data_dir)
        self._state_file = state_file or self._plugins_dir.parent / "plugin-state.json"
        self._timeout = timeout
        self._max_output = max_output
        self._plugins: dict[str, PluginManifest] = {}
        self._tools: dict[str, PluginToolDef] = {}
        self._signature: tuple | None = None

    # ------------------------------------------------------------------
    # Persistent approval state
    # ------------------------------------------------------------------

    def _load_state(self) -> dict[str, set[str]]:
        try:
            raw = json.loads(self._state_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {"approved": set(), "disabled": set()}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("ignoring unreadable plugin state %s: %s", self._state_file, exc)
            return {"approved": set(), "disabled": set()}
        return {
            "approved": set(raw.get("approved", [])),
            "disabled": set(raw.get("disabled", [])),
        }

    def _save_state(self, state: dict[str, set[str]]) -> None:
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        payload = {key: sorted(values) for key, values in state.items()}
        self._state_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def _update_state(self, key: str, name: str, present: bool) -> None:
        state = self._load_state()
        if present:
            state[key].add(name)
        else:
            state[key].discard(name)
        self._save_state(state)
        self.reload()

    def approve(self, name: str) -> None:
        self._update_state("approved", name, True)

    def revoke(self, name: str) -> None:
        self._update_state("approved", name, False)

    def enable(self, name: str) -> None:
        self._update_state("disabled", name, False)

    def disable(self, name: str) -> None:
        self._update_state("disabled", name, True)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _plugin_dirs(self) -> list[Path]:
        if not self._plugins_dir.is_dir():
            return []
        return sorted(
            p for p in self._plugins_dir.iterdir() if p.is_dir() and not p.name.startswith(".")
        )

    def _current_signature(self) -> tuple:
        def mtime(path: Path) -> float | None:
            try:
                return path.stat().st_mtime
            except OSError:
                return None

        manifests = tuple(
            (d.name, mtime(d / MANIFEST_NAME)) for d in self._plugin_dirs()
        )
        return (mtime(self._plugins_dir), mtime(self._state_file), manifests)

    def load_all(self) -> None:
        self._plugins_dir.mkdir(parents=True, exist_ok=True)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        state = self._load_state()

        plugins: dict[str, PluginManifest] = {}
        tools: dict[str, PluginToolDef] = {}
        for directory in self._plugin_dirs():
            manifest_path = directory / MANIFEST_NAME
            if not manifest_path.is_file():
                logger.debug("skipping %s: no %s", directory.name, MANIFEST_NAME)
                continue
            try:
                manifest = parse_manifest(manifest_path)
            except ManifestError as exc:
                logger.error("rejected plugin %s: %s", directory.name, exc)
                continue
            if manifest.name not in state["approved"]:
                logger.info("skipping unapproved plugin %s", manifest.name)
                continue

            manifest = manifest.model_copy(update={"enabled": manifest.name not in state["disabled"]})
            for tool in manifest.tools:
                if tool.name in tools:
                    logger.warning(
                        "duplicate tool %s from plugin %s, keeping %s",
                        tool.name,
                        manifest.name,
                        tools[tool.name].plugin_name,
                    )
                    continue
                tools[tool.name] = tool
            plugins[manifest.name] = manifest

        self._plugins = plugins
        self._tools = tools
        self._signature = self._current_signature()
        logger.info("loaded %d plugins with %d tools", len(plugins), len(tools))

    def reload(self) -> None:
        self.load_all()

    def refresh(self) -> bool:
        """Reload if anything under the plugins directory changed. True when reloaded."""
        if self._signature is not None and self._signature == self._current_signature():
            return False
        self.load_all()
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_plugin_tool(self, name: str) -> bool:
        return name in self._tools

    def manifest_for_tool(self, name: str) -> PluginManifest | None:
        tool = self._tools.get(name)
        if tool is None:
            return None
        return self._plugins.get(tool.plugin_name)

    def tool_definitions(self) -> list[PluginToolDef]:
        """Tools of enabled plugins only."""
        return [
            tool
            for tool in self._tools.values()
            if self._plugins.get(tool.plugin_name) and self._plugins[tool.plugin_name].enabled
        ]

    def discovered(self) -> list[PluginStatus]:
        """Every plugin directory on disk, approved or not."""
        state = self._load_state()
        statuses: list[PluginStatus] = []
        for directory in self._plugin_dirs():
            manifest_path = directory / MANIFEST_NAME
            if not manifest_path.is_file():
                continue
            try:
                name = parse_manifest(manifest_path).name
                error = None
            except ManifestError as exc:
                name, error = directory.name, str(exc)
            approved = name in state["approved"]
            statuses.append(
                PluginStatus(
                    name=name,
                    approved=approved,
                    enabled=approved and name not in state["disabled"],
                    error=error,
                )
            )
        return statuses

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, name: str, tool_input: dict[str, Any]) -> ToolResult:
        manifest = self.manifest_for_tool(name)
        if manifest is None:
            return ToolResult(result=f"Unknown plugin tool: {name}", is_error=True)
        if not manifest.enabled:
            return ToolResult(result=f"Plugin {manifest.name} is disabled.", is_error=True)
        return await run_plugin(
            manifest,
            name,
            tool_input,
            self._data_dir / manifest.name,
            timeout=self._timeout,
            max_output=self._max_output,
        )
