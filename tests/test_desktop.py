import sys
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from deskpilot.desktop import InputExecutor, ScreenCapture, _active_window_title


@pytest.fixture
def fake_pyautogui():
    module = MagicMock()
    module.FailSafeException = type("FailSafeException", (Exception,), {})
    with patch.dict(sys.modules, {"pyautogui": module}):
        yield module


# ---------------------------------------------------------------------------
# Input Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_click_variants(fake_pyautogui):
    executor = InputExecutor()
    text, is_error = await executor.execute("double_click", {"x": 10.6, "y": "20"})
    assert not is_error
    assert text == "Double click at (10, 20)."
    fake_pyautogui.doubleClick.assert_called_once_with(10, 20)


@pytest.mark.asyncio
async def test_press_key_maps_modifiers(fake_pyautogui):
    text, _ = await InputExecutor().execute("press_key", {"key": "S", "modifiers": ["cmd", "Shift"]})
    fake_pyautogui.hotkey.assert_called_once_with("command", "shift", "s")
    assert text == "Pressed command+shift+s."


@pytest.mark.asyncio
async def test_scroll_direction_sets_sign(fake_pyautogui):
    await InputExecutor().execute("scroll", {"direction": "down", "amount": 2, "x": 5, "y": 6})
    fake_pyautogui.scroll.assert_called_once_with(-2, x=5, y=6)


@pytest.mark.asyncio
async def test_missing_parameter_is_an_error(fake_pyautogui):
    text, is_error = await InputExecutor().execute("click", {"x": 1})
    assert is_error
    assert "'y'" in text


@pytest.mark.asyncio
async def test_fail_safe_is_reported(fake_pyautogui):
    fake_pyautogui.click.side_effect = fake_pyautogui.FailSafeException()
    text, is_error = await InputExecutor().execute("click", {"x": 0, "y": 0})
    assert is_error
    assert "fail-safe" in text


@pytest.mark.asyncio
async def test_typing_toggles_hotkey_suppression(fake_pyautogui):
    toggles = []
    executor = InputExecutor(on_suppress=toggles.append)
    await executor.execute("type_text", {"text": "hello"}, suppress_hotkey=True)
    await executor.execute("press_key", {"key": "tab"})
    assert toggles == [True, False]
    fake_pyautogui.write.assert_called_once_with("hello", interval=0.01)


@pytest.mark.asyncio
async def test_unknown_input_tool(fake_pyautogui):
    assert (await InputExecutor().execute("teleport", {}))[1] is True


# ---------------------------------------------------------------------------
# Capture Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_capture_downscales_and_reports_frame(fake_pyautogui):
    image_module = pytest.importorskip("PIL.Image")
    fake_pyautogui.screenshot.return_value = image_module.new("RGB", (2560, 1600), "white")
    fake_pyautogui.size.return_value = (1280, 800)
    fake_pyautogui.getActiveWindow.return_value = SimpleNamespace(title="Checkout - Safari")

    observation = await ScreenCapture().capture(None, 1280, 70)
    assert (observation.width, observation.height) == (1280, 800)
    assert observation.frame == (0, 0, 1280, 800)
    assert observation.media_type == "image/jpeg"
    assert observation.image[:2] == b"\xff\xd8"
    assert observation.window_title == "Checkout - Safari"


def test_active_window_title_when_unsupported():
    assert _active_window_title(SimpleNamespace()) is None
    assert _active_window_title(SimpleNamespace(getActiveWindow=lambda: None)) is None
    assert _active_window_title(SimpleNamespace(getActiveWindow=lambda: SimpleNamespace(title=""))) is None
