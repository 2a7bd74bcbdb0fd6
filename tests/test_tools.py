from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from deskpilot import tools
from deskpilot.tools import (
    BUILTIN_TOOLS,
    MAX_OUTPUT_CHARS,
    LaunchExecutor,
    ShellExecutor,
    VaultExecutor,
    _truncate,
)

# ---------------------------------------------------------------------------
# Registry Tests
# ---------------------------------------------------------------------------


def test_builtin_tools_have_categories_and_args():
    categories = {spec.category for spec in BUILTIN_TOOLS.values()}
    assert categories == {"input", "launch", "shell", "vault", "capture"}
    assert all(spec.args.startswith("{") for spec in BUILTIN_TOOLS.values())
    assert BUILTIN_TOOLS["run_shell_command"].category == "shell"


def test_truncate():
    text = "x" * (MAX_OUTPUT_CHARS + 10)
    result = _truncate(text)
    assert result.startswith("x" * MAX_OUTPUT_CHARS + "\n")
    assert result.endswith("(truncated)")
    assert result.count("x") == MAX_OUTPUT_CHARS
    assert _truncate("b" * MAX_OUTPUT_CHARS) == "b" * MAX_OUTPUT_CHARS
    assert _truncate("short") == "short"


# ---------------------------------------------------------------------------
# Shell Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_shell_command_output():
    text, is_error = await ShellExecutor().execute("run_shell_command", {"command": "echo hello"})
    assert text == "hello"
    assert not is_error


@pytest.mark.asyncio
async def test_shell_command_merges_stderr_and_reports_exit_code():
    text, is_error = await ShellExecutor().execute(
        "run_shell_command", {"command": "echo oops 1>&2; exit 4"}
    )
    assert is_error
    assert text.startswith("Exit code 4")
    assert "oops" in text


@pytest.mark.asyncio
async def test_shell_command_timeout():
    text, is_error = await ShellExecutor(timeout=0.2).execute("run_shell_command", {"command": "sleep 5"})
    assert is_error
    assert "timed out" in text


@pytest.mark.asyncio
async def test_shell_empty_command():
    text, is_error = await ShellExecutor().execute("run_shell_command", {"command": "  "})
    assert is_error
    assert "no command" in text


@pytest.mark.asyncio
async def test_applescript_without_osascript():
    with patch("deskpilot.tools.shutil.which", return_value=None):
        text, is_error = await ShellExecutor().execute("run_applescript", {"script": "beep"})
    assert is_error
    assert "macOS" in text


# ---------------------------------------------------------------------------
# Vault Sandboxing Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_vault_write_read_list(tmp_path):
    vault = VaultExecutor(tmp_path)
    text, is_error = await vault.execute("vault_write", {"path": "notes/today.md", "content": "hello"})
    assert not is_error
    assert text == "Wrote 5 bytes to notes/today.md."

    await vault.execute("vault_write", {"path": "notes/today.md", "content": " world", "append": True})
    text, _ = await vault.execute("vault_read", {"path": "notes/today.md"})
    assert text == "hello world"

    listing, _ = await vault.execute("vault_list", {})
    assert listing == "notes/"
    listing, _ = await vault.execute("vault_list", {"path": "notes"})
    assert listing == "today.md"


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["../../etc/passwd", "notes/../../outside.md"])
async def test_vault_blocks_traversal(tmp_path, path):
    vault = VaultExecutor(tmp_path / "vault")
    for name in ("vault_read", "vault_write", "vault_list"):
        text, is_error = await vault.execute(name, {"path": path, "content": "x"})
        assert is_error
        assert "SECURITY BLOCK" in text
    assert not (tmp_path / "outside.md").exists()


@pytest.mark.asyncio
async def test_vault_read_missing_and_write_folder(tmp_path):
    vault = VaultExecutor(tmp_path)
    (tmp_path / "folder").mkdir()
    text, is_error = await vault.execute("vault_read", {"path": "nope.md"})
    assert is_error and "not found" in text
    text, is_error = await vault.execute("vault_write", {"path": "folder", "content": "x"})
    assert is_error and "folder" in text


@pytest.mark.asyncio
async def test_vault_empty_listing(tmp_path):
    text, is_error = await VaultExecutor(tmp_path).execute("vault_list", {"path": ""})
    assert text == "(empty)"
    assert not is_error


# ---------------------------------------------------------------------------
# Launch Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_open_url_adds_scheme():
    with patch("deskpilot.tools.webbrowser.open", return_value=True) as mock_open:
        text, is_error = await LaunchExecutor().execute("open_url", {"url": "example.com"})
    mock_open.assert_called_once_with("https://example.com")
    assert not is_error
    assert text == "Opened https://example.com."


@pytest.mark.asyncio
async def test_open_url_without_browser():
    with patch("deskpilot.tools.webbrowser.open", return_value=False):
        text, is_error = await LaunchExecutor().execute("open_url", {"url": "https://example.com"})
    assert is_error


@pytest.mark.asyncio
async def test_open_application_not_found_on_linux():
    with patch.object(tools.sys, "platform", "linux"), patch("deskpilot.tools.shutil.which", return_value=None):
        text, is_error = await LaunchExecutor().execute("open_application", {"name": "Calculator"})
    assert is_error
    assert "not found" in text


@pytest.mark.asyncio
async def test_open_application_on_macos_uses_open():
    process = MagicMock(returncode=0)
    process.communicate = AsyncMock(return_value=(b"", b""))
    with patch.object(tools.sys, "platform", "darwin"), patch(
        "deskpilot.tools.asyncio.create_subprocess_exec", AsyncMock(return_value=process)
    ) as spawn:
        text, is_error = await LaunchExecutor().execute("open_application", {"name": "Calculator"})
    assert spawn.await_args.args[:3] == ("open", "-a", "Calculator")
    assert not is_error
    assert text == "Opened Calculator."


@pytest.mark.asyncio
async def test_unknown_tool_names():
    assert (await LaunchExecutor().execute("fly", {}))[1] is True
    assert (await ShellExecutor().execute("fly", {}))[1] is True
