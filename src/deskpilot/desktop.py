# desktop.py
# Reference capture and input adapters built on pyautogui + Pillow.
#
# Both libraries are imported lazily so the core (and its tests) run on
# machines without a display. Install with the `desktop` extra.
#
# Coordinates: the loop hands the input executor screen points. Scaling
# from observation pixels happens in the dispatcher, which owns the latest
# observation's frame.

import asyncio
import io
import logging
from contextlib import contextmanager
from typing import Any, Callable

from deskpilot.models import Observation

logger = logging.getLogger(__name__)

_MODIFIER_KEYS = {
    "command": "command",
    "cmd": "command",
    "shift": "shift",
    "option": "option",
    "alt": "alt",
    "control": "ctrl",
    "ctrl": "ctrl",
}


class CaptureError(Exception):
    """Raised when the screen cannot be captured."""


def _active_window_title(pyautogui: Any) -> str | None:
    """Frontmost window title where pyautogui can report it (pygetwindow platforms)."""
    get_active = getattr(pyautogui, "getActiveWindow", None)
    if get_active is None:
        return None
    try:
        window = get_active()
    except Exception as exc:
        logger.debug("active window lookup failed: %s", exc)
        return None
    title = getattr(window, "title", None)
    return title if isinstance(title, str) and title else None


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------


class ScreenCapture:
    """
    Full-screen capture, downscaled and JPEG-encoded.

    target_pid is accepted for interface compatibility; pyautogui cannot
    isolate a single process window, so the whole screen is returned.
    """

    async def capture(self, target_pid: int | None, max_dimension: int, quality: int) -> Observation:
        return await asyncio.to_thread(self._capture_sync, max_dimension, quality)

    @staticmethod
    def _capture_sync(max_dimension: int, quality: int) -> Observation:
        import pyautogui
        from PIL import Image

        try:
            image = pyautogui.screenshot()
        except Exception as exc:
            raise CaptureError(f"Screen capture failed: {exc}") from exc

        # Frame is in screen points; the bitmap may be larger on HiDPI displays.
        screen_w, screen_h = pyautogui.size()
        pixel_w, pixel_h = image.size
        scale = min(1.0, max_dimension / max(pixel_w, pixel_h))
        if scale < 1.0:
            image = image.resize(
                (max(1, int(pixel_w * scale)), max(1, int(pixel_h * scale))),
                Image.LANCZOS,
            )

        buffer = io.BytesIO()
        image.convert("RGB").save(buffer, format="JPEG", quality=quality)
        return Observation(
            image=buffer.getvalue(),
            media_type="image/jpeg",
            width=image.size[0],
            height=image.size[1],
            frame=(0, 0, screen_w, screen_h),
            window_title=_active_window_title(pyautogui),
        )


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------


class InputExecutor:
    """
    Mouse and keyboard injection.

    `on_suppress` is called with True before and False after synthetic key
    events when the caller passes suppress_hotkey=True, so a global hotkey
    listener can ignore keystrokes the agent itself produces.
    """

    def __init__(self, on_suppress: Callable[[bool], None] | None = None) -> None:
        self._on_suppress = on_suppress

    @contextmanager
    def _hotkey_suppressed(self, enabled: bool):
        if not enabled or self._on_suppress is None:
            yield
            return
        self._on_suppress(True)
        try:
            yield
        finally:
            self._on_suppress(False)

    async def execute(
        self, name: str, params: dict[str, Any], *, suppress_hotkey: bool = False
    ) -> tuple[str, bool]:
        logger.debug("input %s suppress_hotkey=%s", name, suppress_hotkey)
        with self._hotkey_suppressed(suppress_hotkey):
            return await asyncio.to_thread(self._execute_sync, name, params)

    def _execute_sync(self, name: str, params: dict[str, Any]) -> tuple[str, bool]:
        import pyautogui

        try:
            if name in ("click", "right_click", "double_click"):
                x, y = int(params["x"]), int(params["y"])
                if name == "click":
                    pyautogui.click(x, y)
                elif name == "right_click":
                    pyautogui.rightClick(x, y)
                else:
                    pyautogui.doubleClick(x, y)
                return f"{name.replace('_', ' ').capitalize()} at ({x}, {y}).", False

            if name == "type_text":
                text = str(params.get("text", ""))
                if not text:
                    return "Error: no text provided.", True
                pyautogui.write(text, interval=0.01)
                return f"Typed {len(text)} characters.", False

            if name == "press_key":
                key = str(params.get("key", "")).strip().lower()
                if not key:
                    return "Error: no key provided.", True
                modifiers = [
                    _MODIFIER_KEYS.get(str(m).lower(), str(m).lower())
                    for m in params.get("modifiers", []) or []
                ]
                if modifiers:
                    pyautogui.hotkey(*modifiers, key)
                else:
                    pyautogui.press(key)
                return f"Pressed {'+'.join(modifiers + [key])}.", False

            if name == "scroll":
                amount = int(params.get("amount", 3))
                clicks = amount if params.get("direction", "down") == "up" else -amount
                x, y = params.get("x"), params.get("y")
                if x is not None and y is not None:
                    pyautogui.scroll(clicks, x=int(x), y=int(y))
                else:
                    pyautogui.scroll(clicks)
                return f"Scrolled {params.get('direction', 'down')} by {amount}.", False
        except KeyError as exc:
            return f"Error: missing parameter {exc.args[0]!r} for {name}.", True
        except (TypeError, ValueError) as exc:
            return f"Error: invalid parameter for {name}: {exc}", True
        except pyautogui.FailSafeException:
            return "Input aborted: mouse moved to a screen corner (fail-safe).", True

        return f"Unknown input tool: {name}", True
