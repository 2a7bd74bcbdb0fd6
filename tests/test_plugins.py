import asyncio
import json
import os
import stat
import sys
import textwrap
from pathlib import Path

import pytest

from deskpilot.plugins import (
    ManifestError,
    PluginRegistry,
    parse_manifest,
    run_plugin,
)

ECHO_BODY = """
import json, os, sys
request = json.load(sys.stdin)
city = request["input"].get("city", "?")
print(json.dumps({
    "result": f"{request['tool']} {city} {os.environ['PLUGIN_DATA_DIR']}",
    "isError": False,
}))
"""


def make_plugin(root, name="weather", body=ECHO_BODY, tools=None, permissions=None, executable=True, **extra):
    directory = root / name
    directory.mkdir(parents=True, exist_ok=True)
    script = directory / "main.py"
    script.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
    if executable:
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    manifest = {
        "name": name,
        "version": "1.0.0",
        "description": f"{name} plugin",
        "entrypoint": "main.py",
        "permissions": permissions if permissions is not None else ["network"],
        "tools": tools
        if tools is not None
        else [
            {
                "name": f"get_{name}",
                "description": f"Look up {name}",
                "input_schema": {"type": "object", "properties": {"city": {"type": "string"}}},
            }
        ],
    }
    manifest.update(extra)
    (directory / "plugin.json").write_text(json.dumps(manifest), encoding="utf-8")
    return directory


# ---------------------------------------------------------------------------
# Manifest Tests
# ---------------------------------------------------------------------------


def test_parse_manifest_valid(tmp_path):
    directory = make_plugin(tmp_path)
    manifest = parse_manifest(directory / "plugin.json")
    assert manifest.name == "weather"
    assert manifest.directory == directory
    assert manifest.tools[0].name == "get_weather"
    assert manifest.tools[0].plugin_name == "weather"
    assert manifest.permissions == ["network"]


def test_parse_manifest_missing_field(tmp_path):
    directory = make_plugin(tmp_path, version="")
    with pytest.raises(ManifestError, match="version"):
        parse_manifest(directory / "plugin.json")


@pytest.mark.parametrize("entrypoint", ["/usr/bin/env", "../escape.py", "bin/../../x"])
def test_parse_manifest_rejects_unsafe_entrypoints(tmp_path, entrypoint):
    directory = make_plugin(tmp_path, entrypoint=entrypoint)
    with pytest.raises(ManifestError, match="entrypoint"):
        parse_manifest(directory / "plugin.json")


def test_parse_manifest_rejects_non_object_schema(tmp_path):
    tools = [{"name": "x", "description": "y", "input_schema": {"type": "array"}}]
    directory = make_plugin(tmp_path, tools=tools)
    with pytest.raises(ManifestError, match="type 'object'"):
        parse_manifest(directory / "plugin.json")


def test_parse_manifest_rejects_bad_json(tmp_path):
    directory = tmp_path / "broken"
    directory.mkdir()
    (directory / "plugin.json").write_text("{nope", encoding="utf-8")
    with pytest.raises(ManifestError, match="not valid JSON"):
        parse_manifest(directory / "plugin.json")


# ---------------------------------------------------------------------------
# Protocol Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_plugin_round_trip(tmp_path):
    manifest = parse_manifest(make_plugin(tmp_path / "plugins") / "plugin.json")
    data_dir = tmp_path / "data" / "weather"
    result = await run_plugin(manifest, "get_weather", {"city": "Oslo"}, data_dir)
    assert not result.is_error
    assert result.result == f"get_weather Oslo {data_dir}"
    assert data_dir.is_dir()


@pytest.mark.asyncio
async def test_run_plugin_snake_case_error_flag(tmp_path):
    body = 'import json, sys\nsys.stdin.read()\nprint(json.dumps({"result": "bad city", "is_error": True}))\n'
    manifest = parse_manifest(make_plugin(tmp_path, body=body) / "plugin.json")
    result = await run_plugin(manifest, "get_weather", {}, tmp_path / "data")
    assert result.is_error
    assert result.result == "bad city"


@pytest.mark.asyncio
@pytest.mark.parametrize("flag, expected", [("false", False), ("False", False), ("true", True), (None, False)])
async def test_run_plugin_string_error_flag(tmp_path, flag, expected):
    body = f'import json, sys\nsys.stdin.read()\nprint(json.dumps({{"result": "fine", "isError": {flag!r}}}))\n'
    manifest = parse_manifest(make_plugin(tmp_path, body=body) / "plugin.json")
    result = await run_plugin(manifest, "get_weather", {}, tmp_path / "data")
    assert result.result == "fine"
    assert result.is_error is expected


@pytest.mark.asyncio
async def test_run_plugin_unreadable_error_flag_counts_as_error(tmp_path):
    body = 'import json, sys\nsys.stdin.read()\nprint(json.dumps({"result": "fine", "isError": "maybe"}))\n'
    manifest = parse_manifest(make_plugin(tmp_path, body=body) / "plugin.json")
    result = await run_plugin(manifest, "get_weather", {}, tmp_path / "data")
    assert result.is_error


@pytest.mark.asyncio
async def test_run_plugin_non_zero_exit(tmp_path):
    body = "import sys\nsys.stdin.read()\nsys.stderr.write('boom')\nsys.exit(3)\n"
    manifest = parse_manifest(make_plugin(tmp_path, body=body) / "plugin.json")
    result = await run_plugin(manifest, "get_weather", {}, tmp_path / "data")
    assert result.is_error
    assert "non-zero exit" in result.result
    assert "boom" in result.result


@pytest.mark.asyncio
async def test_run_plugin_non_json_output(tmp_path):
    body = "import sys\nsys.stdin.read()\nprint('hello there')\n"
    manifest = parse_manifest(make_plugin(tmp_path, body=body) / "plugin.json")
    result = await run_plugin(manifest, "get_weather", {}, tmp_path / "data")
    assert result.is_error
    assert "invalid output" in result.result


@pytest.mark.asyncio
async def test_run_plugin_timeout_kills_process(tmp_path):
    body = "import time\ntime.sleep(10)\n"
    manifest = parse_manifest(make_plugin(tmp_path, body=body) / "plugin.json")
    result = await run_plugin(manifest, "get_weather", {}, tmp_path / "data", timeout=0.5)
    assert result.is_error
    assert "timeout" in result.result


def _alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    try:
        stat_line = (Path("/proc") / str(pid) / "stat").read_text()
    except OSError:
        return True
    return stat_line.rsplit(")", 1)[1].split()[0] != "Z"


@pytest.mark.asyncio
async def test_run_plugin_timeout_kills_spawned_children(tmp_path):
    body = """
    import os, subprocess, sys, time
    child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    with open(os.path.join(os.environ["PLUGIN_DATA_DIR"], "child.pid"), "w") as handle:
        handle.write(str(child.pid))
    time.sleep(30)
    """
    manifest = parse_manifest(make_plugin(tmp_path, body=body) / "plugin.json")
    data_dir = tmp_path / "data"
    result = await run_plugin(manifest, "get_weather", {}, data_dir, timeout=2.0)
    assert "timeout" in result.result

    child_pid = int((data_dir / "child.pid").read_text())
    for _ in range(50):
        if not _alive(child_pid):
            break
        await asyncio.sleep(0.05)
    assert not _alive(child_pid)


@pytest.mark.asyncio
async def test_run_plugin_output_cap(tmp_path):
    body = "import sys\nsys.stdin.read()\nsys.stdout.write('x' * 5000)\n"
    manifest = parse_manifest(make_plugin(tmp_path, body=body) / "plugin.json")
    result = await run_plugin(manifest, "get_weather", {}, tmp_path / "data", max_output=100)
    assert result.is_error
    assert "output too large" in result.result


@pytest.mark.asyncio
async def test_run_plugin_requires_executable(tmp_path):
    manifest = parse_manifest(make_plugin(tmp_path, executable=False) / "plugin.json")
    if os.access(manifest.entrypoint_path, os.X_OK):
        pytest.skip("filesystem reports every file as executable")
    result = await run_plugin(manifest, "get_weather", {}, tmp_path / "data")
    assert result.is_error
    assert "launch failed" in result.result


# ---------------------------------------------------------------------------
# Registry Tests
# ---------------------------------------------------------------------------


@pytest.fixture
def registry(tmp_path):
    make_plugin(tmp_path / "plugins", "weather")
    make_plugin(tmp_path / "plugins", "stocks", permissions=["read"])
    registry = PluginRegistry(tmp_path / "plugins", tmp_path / "plugin-data")
    registry.load_all()
    return registry


def test_unapproved_plugins_are_not_loaded(registry):
    assert registry.tool_definitions() == []
    assert not registry.is_plugin_tool("get_weather")
    statuses = {s.name: s for s in registry.discovered()}
    assert set(statuses) == {"weather", "stocks"}
    assert not statuses["weather"].approved


def test_approve_persists_and_loads(registry, tmp_path):
    registry.approve("weather")
    assert registry.is_plugin_tool("get_weather")
    assert registry.manifest_for_tool("get_weather").name == "weather"

    state = json.loads((tmp_path / "plugin-state.json").read_text())
    assert state["approved"] == ["weather"]

    fresh = PluginRegistry(tmp_path / "plugins", tmp_path / "plugin-data")
    fresh.load_all()
    assert fresh.is_plugin_tool("get_weather")


@pytest.mark.asyncio
async def test_disabled_plugin_is_hidden_and_refuses_calls(registry):
    registry.approve("weather")
    registry.disable("weather")
    assert registry.tool_definitions() == []
    result = await registry.execute("get_weather", {})
    assert result.is_error
    assert "disabled" in result.result

    registry.enable("weather")
    assert [t.name for t in registry.tool_definitions()] == ["get_weather"]


def test_revoke_unloads(registry):
    registry.approve("weather")
    registry.revoke("weather")
    assert not registry.is_plugin_tool("get_weather")


def test_duplicate_tool_names_keep_the_first(tmp_path):
    tools = [{"name": "lookup", "description": "d", "input_schema": {"type": "object"}}]
    make_plugin(tmp_path / "plugins", "alpha", tools=tools)
    make_plugin(tmp_path / "plugins", "beta", tools=tools)
    registry = PluginRegistry(tmp_path / "plugins", tmp_path / "plugin-data")
    registry.approve("alpha")
    registry.approve("beta")
    assert registry.manifest_for_tool("lookup").name == "alpha"


def test_refresh_picks_up_new_plugins(registry, tmp_path):
    registry.approve("weather")
    assert registry.refresh() is False
    make_plugin(tmp_path / "plugins", "news")
    state_file = tmp_path / "plugin-state.json"
    state = json.loads(state_file.read_text())
    state["approved"].append("news")
    state_file.write_text(json.dumps(state))
    os.utime(state_file, (0, 0))
    assert registry.refresh() is True
    assert registry.is_plugin_tool("get_news")


@pytest.mark.asyncio
async def test_registry_execute_runs_plugin(registry, tmp_path):
    registry.approve("weather")
    result = await registry.execute("get_weather", {"city": "Lima"})
    assert not result.is_error
    assert result.result.startswith("get_weather Lima")
    assert str(tmp_path / "plugin-data" / "weather") in result.result


@pytest.mark.asyncio
async def test_unknown_plugin_tool(registry):
    result = await registry.execute("nope", {})
    assert result.is_error
