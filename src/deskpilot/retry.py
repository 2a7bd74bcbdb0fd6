# retry.py
# Error classification and retry strategies for the model call.
#
#   classify(error)          -> Classification
#   strategy_for(cls)        -> RetryStrategy
#   strategy.next_delay(n)   -> seconds, or None once attempts are exhausted
#
# When next_delay() returns None the caller stops retrying and counts one
# consecutive failure against the run's budget.

import asyncio
import json
import re
from enum import Enum

import httpx
import openai
from pydantic import BaseModel, ConfigDict

from deskpilot.transport import (
    HTTPStatusError,
    InvalidResponse,
    ResponseParseError,
    Unauthenticated,
)

DEFAULT_RATE_LIMIT_DELAY = 5.0

_RETRY_AFTER_PATTERNS = (
    re.compile(r'"retry_after"\s*:\s*(\d+(?:\.\d+)?)'),
    re.compile(r'"retry-after"\s*:\s*(\d+(?:\.\d+)?)'),
    re.compile(r"retry[_-]after\s*[:=]\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
)

_BILLING_TYPES = {"insufficient_credits", "billing_error"}
_BILLING_PHRASES = ("credit balance", "billing", "insufficient credits", "purchase credits")

_NETWORK_ERRORS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.NetworkError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class Classification(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    retry_after: float | None = None

    @classmethod
    def transient(cls) -> "Classification":
        return cls(kind=ErrorKind.TRANSIENT)

    @classmethod
    def rate_limited(cls, retry_after: float | None = None) -> "Classification":
        return cls(kind=ErrorKind.RATE_LIMITED, retry_after=retry_after)

    @classmethod
    def permanent(cls) -> "Classification":
        return cls(kind=ErrorKind.PERMANENT)

    @classmethod
    def unknown(cls) -> "Classification":
        return cls(kind=ErrorKind.UNKNOWN)


def parse_retry_after(body: str) -> float | None:
    """Pull a machine-provided retry-after value out of an error body."""
    for pattern in _RETRY_AFTER_PATTERNS:
        match = pattern.search(body or "")
        if match:
            return float(match.group(1))
    return None


def _is_billing_error(body: str) -> bool:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        data = None
    if isinstance(data, dict):
        error = data.get("error", data)
        if isinstance(error, dict):
            if error.get("type") in _BILLING_TYPES:
                return True
            message = str(error.get("message", "")).lower()
            return any(phrase in message for phrase in _BILLING_PHRASES)
    lowered = (body or "").lower()
    return any(phrase in lowered for phrase in _BILLING_PHRASES)


def _classify_status(status_code: int, body: str) -> Classification:
    if status_code == 429:
        return Classification.rate_limited(parse_retry_after(body))
    if status_code == 400:
        # Billing errors arrive as 400s too; both are permanent, the split
        # only matters for the message shown to the user.
        return Classification.permanent()
    if status_code in (401, 403, 404):
        return Classification.permanent()
    if status_code in (500, 502, 503, 529):
        return Classification.transient()
    return Classification.unknown()


def classify(error: BaseException) -> Classification:
    """Map a raw failure from the transport layer to a retry classification."""
    if isinstance(error, Unauthenticated):
        return Classification.permanent()
    if isinstance(error, HTTPStatusError):
        return _classify_status(error.status_code, error.body)
    if isinstance(error, InvalidResponse):
        return Classification.transient()
    if isinstance(error, ResponseParseError):
        return Classification.permanent()
    if isinstance(error, _NETWORK_ERRORS):
        return Classification.transient()
    return Classification.unknown()


def describe(error: BaseException) -> str:
    """One-line, human-readable description of a transport failure."""
    if isinstance(error, Unauthenticated):
        return "The model API rejected the credentials. Check OPENROUTER_API_KEY."
    if isinstance(error, HTTPStatusError):
        if error.status_code == 429:
            return "The model API is rate limiting requests."
        if error.status_code == 400 and _is_billing_error(error.body):
            return "The model API account is out of credits."
        return f"The model API returned HTTP {error.status_code}."
    if isinstance(error, _NETWORK_ERRORS):
        return "Could not reach the model API (network timeout or connection failure)."
    text = str(error).strip() or error.__class__.__name__
    return f"Model call failed: {text}"


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class RetryStrategy(BaseModel):
    """
    none:        never retry
    fixed:       constant delay for up to max_attempts
    exponential: base * 2**attempt, capped at max_delay, for up to max_attempts
    """

    model_config = ConfigDict(frozen=True)

    mode: str = "none"
    delay: float = 0.0
    base: float = 0.0
    max_delay: float = 0.0
    max_attempts: int = 0

    @classmethod
    def none(cls) -> "RetryStrategy":
        return cls()

    @classmethod
    def fixed(cls, delay: float, max_attempts: int) -> "RetryStrategy":
        return cls(mode="fixed", delay=delay, max_attempts=max_attempts)

    @classmethod
    def exponential(cls, base: float, max_delay: float, max_attempts: int) -> "RetryStrategy":
        return cls(mode="exponential", base=base, max_delay=max_delay, max_attempts=max_attempts)

    def next_delay(self, attempt: int) -> float | None:
        """Delay before retry number `attempt` (0-based), or None to stop."""
        if self.mode == "none" or attempt >= self.max_attempts:
            return None
        if self.mode == "fixed":
            return self.delay
        return min(self.base * (2**attempt), self.max_delay)


def strategy_for(classification: Classification) -> RetryStrategy:
    kind = classification.kind
    if kind is ErrorKind.PERMANENT:
        return RetryStrategy.none()
    if kind is ErrorKind.TRANSIENT:
        return RetryStrategy.exponential(base=1.0, max_delay=15.0, max_attempts=3)
    if kind is ErrorKind.RATE_LIMITED:
        delay = classification.retry_after
        if delay is None:
            delay = DEFAULT_RATE_LIMIT_DELAY
        return RetryStrategy.fixed(delay=delay, max_attempts=3)
    return RetryStrategy.exponential(base=2.0, max_delay=30.0, max_attempts=2)


# ---------------------------------------------------------------------------
# Tool error strings
# ---------------------------------------------------------------------------

_TOOL_ERROR_PATTERNS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "transient",
        ("rate limit", "429", "timeout", "timed out", "connection", "network",
         "temporarily unavailable", "service unavailable", "503", "502",
         "screenshot failed", "capture failed", "econnreset", "econnrefused"),
    ),
    (
        "permanent",
        ("not found", "permission denied", "denied by user", "unknown tool",
         "invalid parameter", "crashed", "not running", "401", "403",
         "unauthorized", "forbidden", "unsupported", "malformed"),
    ),
    ("stuck", ("stuck", "identical", "no progress", "repeating", "same state", "loop detected")),
    (
        "resource",
        ("token limit", "max iterations", "max tokens", "context length",
         "budget exceeded", "time limit", "quota", "payload too large", "413"),
    ),
)


def classify_tool_error(text: str) -> str:
    """Coarse class of a tool error string, for messages and the journal."""
    lowered = text.lower()
    for label, patterns in _TOOL_ERROR_PATTERNS:
        if any(p in lowered for p in patterns):
            return label
    return "transient"
