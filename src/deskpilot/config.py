# config.py
# Runtime configuration. Budgets live here as documented defaults; nothing in
# the loop takes per-call tunables.
#
# Values can be overridden from the environment (or a .env file) with
# DESKPILOT_<FIELD_NAME>, e.g. DESKPILOT_MAX_ITERATIONS=20.

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

PermissionMode = Literal["standard", "autonomous", "yolo"]

ENV_PREFIX = "DESKPILOT_"


class AgentConfig(BaseModel):
    # ── Loop budgets ──────────────────────────────────────────────
    max_iterations: int = Field(default=35, ge=1)
    max_consecutive_failures: int = Field(default=3, ge=1)
    repeat_threshold: int = Field(
        default=2, ge=1, description="Identical actions in a row that count as stuck."
    )
    window_repeat_threshold: int = Field(default=3, ge=1)
    fingerprint_window: int = Field(default=8, ge=1)
    fingerprint_tolerance: int = Field(default=10, ge=1, description="Coordinate rounding, px.")
    progress_log_size: int = Field(default=10, ge=1)
    iteration_pause: float = Field(default=0.1, ge=0)
    api_failure_pause: float = Field(default=1.0, ge=0)

    # ── Models ────────────────────────────────────────────────────
    model: str = "anthropic/claude-sonnet-4"
    safety_model: str = "anthropic/claude-3.5-haiku"
    max_tokens: int = Field(default=512, ge=1)
    base_url: str = "https://openrouter.ai/api/v1"

    # ── Capture ───────────────────────────────────────────────────
    screenshot_max_dimension: int = Field(default=1280, ge=64)
    screenshot_quality: int = Field(default=70, ge=1, le=100)
    save_observations: bool = True

    # ── Safety ────────────────────────────────────────────────────
    confirm_destructive_actions: bool = True
    permission_mode: PermissionMode = "standard"
    safety_llm_timeout: float = Field(default=10.0, gt=0)

    # ── Subprocesses ──────────────────────────────────────────────
    plugin_timeout: float = Field(default=30.0, gt=0)
    plugin_max_output: int = Field(default=1_048_576, gt=0)
    shell_timeout: float = Field(default=30.0, gt=0)

    # ── Storage ───────────────────────────────────────────────────
    home: Path = Field(default_factory=lambda: Path.home() / ".deskpilot")
    stale_run_age: float = Field(default=3600.0, gt=0, description="Seconds before a run is abandoned.")

    @property
    def runs_dir(self) -> Path:
        return self.home / "runs"

    @property
    def plugins_dir(self) -> Path:
        return self.home / "plugins"

    @property
    def plugin_data_dir(self) -> Path:
        return self.home / "plugin-data"

    @property
    def vault_dir(self) -> Path:
        return self.home / "vault"

    @classmethod
    def from_env(cls, **overrides) -> "AgentConfig":
        """Build a config from defaults, DESKPILOT_* variables, then overrides."""
        load_dotenv()
        values: dict = {}
        for name in cls.model_fields:
            raw = os.getenv(ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        values.update(overrides)
        return cls.model_validate(values)


def api_key() -> str | None:
    load_dotenv()
    return os.getenv("OPENROUTER_API_KEY")
