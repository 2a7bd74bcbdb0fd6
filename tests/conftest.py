import json

import pytest

from deskpilot.config import AgentConfig
from deskpilot.models import Observation
from deskpilot.transport import LLMResponse

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


def action_json(action: str = "", params: dict | None = None, note: str = "", done: bool = False) -> str:
    return json.dumps(
        {
            "screen": "A desktop.",
            "blocker": None,
            "action": action,
            "params": params or {},
            "progress_note": note,
            "done": done,
        }
    )


class FakeTransport:
    """Replays scripted responses. Items may be strings, LLMResponses or exceptions."""

    def __init__(self, script=None, default: str | None = None):
        self.script = list(script or [])
        self.default = default if default is not None else action_json(done=True, note="Finished.")
        self.calls = []

    async def send(self, messages, system_prompt, tools, model, max_tokens):
        self.calls.append(
            {"messages": messages, "system_prompt": system_prompt, "model": model, "max_tokens": max_tokens}
        )
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, LLMResponse):
            return item
        return LLMResponse(text=item, input_tokens=100, output_tokens=20)


class FakeCapture:
    def __init__(self, failures: int = 0, always_fail: bool = False):
        self.failures = failures
        self.always_fail = always_fail
        self.calls = 0

    async def capture(self, target_pid, max_dimension, quality):
        self.calls += 1
        if self.always_fail or self.calls <= self.failures:
            raise RuntimeError("display not available")
        return Observation(image=b"\xff\xd8fake", width=1000, height=500, frame=(0, 0, 2000, 1000))


class FakeExecutor:
    def __init__(self, text: str = "ok", is_error: bool = False):
        self.text = text
        self.is_error = is_error
        self.calls = []

    async def execute(self, name, params):
        self.calls.append((name, params))
        return self.text, self.is_error


class FakeInputExecutor(FakeExecutor):
    async def execute(self, name, params, *, suppress_hotkey=False):
        self.calls.append((name, params, suppress_hotkey))
        return f"{name} done", False


async def instant_sleep(seconds, cancel_event):
    return not cancel_event.is_set()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config(tmp_path):
    return AgentConfig(home=tmp_path / "home", iteration_pause=0, api_failure_pause=0)


@pytest.fixture
def executors():
    return {
        "input": FakeInputExecutor(),
        "launch": FakeExecutor("Opened Calculator."),
        "shell": FakeExecutor("hello"),
        "vault": FakeExecutor("note body"),
    }
