import asyncio

import httpx
import pytest

from deskpilot.retry import (
    DEFAULT_RATE_LIMIT_DELAY,
    Classification,
    ErrorKind,
    RetryStrategy,
    classify,
    classify_tool_error,
    describe,
    parse_retry_after,
    strategy_for,
)
from deskpilot.transport import HTTPStatusError, InvalidResponse, ResponseParseError, Unauthenticated

# ---------------------------------------------------------------------------
# Classification Tests
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("status", [401, 403, 404])
def test_auth_and_missing_are_permanent(status):
    assert classify(HTTPStatusError(status, "nope")).kind is ErrorKind.PERMANENT


def test_plain_400_is_permanent():
    assert classify(HTTPStatusError(400, '{"error": {"message": "bad field"}}')).kind is ErrorKind.PERMANENT


def test_billing_400_is_permanent_with_billing_message():
    error = HTTPStatusError(400, '{"error": {"type": "insufficient_credits", "message": "top up"}}')
    assert classify(error).kind is ErrorKind.PERMANENT
    assert "out of credits" in describe(error)


@pytest.mark.parametrize("status", [500, 502, 503, 529])
def test_server_errors_are_transient(status):
    assert classify(HTTPStatusError(status)).kind is ErrorKind.TRANSIENT


def test_rate_limit_reads_retry_after():
    classification = classify(HTTPStatusError(429, '{"retry_after": 7}'))
    assert classification.kind is ErrorKind.RATE_LIMITED
    assert classification.retry_after == 7.0


def test_rate_limit_without_hint():
    classification = classify(HTTPStatusError(429, "slow down"))
    assert classification.kind is ErrorKind.RATE_LIMITED
    assert classification.retry_after is None


def test_unauthenticated_is_permanent():
    assert classify(Unauthenticated("no key")).kind is ErrorKind.PERMANENT
    assert "OPENROUTER_API_KEY" in describe(Unauthenticated("no key"))


def test_invalid_response_is_transient_and_parse_error_permanent():
    assert classify(InvalidResponse("empty")).kind is ErrorKind.TRANSIENT
    assert classify(ResponseParseError("garbage")).kind is ErrorKind.PERMANENT


def test_network_errors_are_transient():
    assert classify(httpx.ConnectError("refused")).kind is ErrorKind.TRANSIENT
    assert classify(asyncio.TimeoutError()).kind is ErrorKind.TRANSIENT
    assert "network" in describe(httpx.ConnectError("refused"))


def test_unrecognized_error_is_unknown():
    assert classify(RuntimeError("weird")).kind is ErrorKind.UNKNOWN
    assert classify(HTTPStatusError(418)).kind is ErrorKind.UNKNOWN


def test_parse_retry_after_variants():
    assert parse_retry_after('{"retry_after": 3.5}') == 3.5
    assert parse_retry_after("Retry-After: 12") == 12.0
    assert parse_retry_after("") is None


# ---------------------------------------------------------------------------
# Strategy Tests
# ---------------------------------------------------------------------------


def test_permanent_never_retries():
    assert strategy_for(Classification.permanent()).next_delay(0) is None


def test_rate_limited_uses_fixed_retry_after():
    strategy = strategy_for(Classification.rate_limited(7.0))
    assert strategy.mode == "fixed"
    assert strategy.next_delay(0) == 7.0
    assert strategy.next_delay(1) == 7.0


def test_rate_limited_default_delay():
    assert strategy_for(Classification.rate_limited()).next_delay(0) == DEFAULT_RATE_LIMIT_DELAY


def test_transient_backoff_increases_then_expires():
    strategy = strategy_for(classify(HTTPStatusError(500)))
    delays = []
    attempt = 0
    while (delay := strategy.next_delay(attempt)) is not None:
        delays.append(delay)
        attempt += 1
    assert delays == sorted(delays)
    assert len(set(delays)) == len(delays)
    assert attempt == strategy.max_attempts


def test_exponential_is_capped():
    strategy = RetryStrategy.exponential(base=10.0, max_delay=15.0, max_attempts=5)
    assert strategy.next_delay(0) == 10.0
    assert strategy.next_delay(1) == 15.0
    assert strategy.next_delay(4) == 15.0
    assert strategy.next_delay(5) is None


def test_unknown_gets_a_short_retry():
    strategy = strategy_for(Classification.unknown())
    assert strategy.next_delay(0) is not None
    assert strategy.next_delay(strategy.max_attempts) is None


# ---------------------------------------------------------------------------
# Tool Error Tests
# ---------------------------------------------------------------------------


def test_classify_tool_error():
    assert classify_tool_error("Command timed out after 30s and was killed.") == "transient"
    assert classify_tool_error("Unknown tool: fly") == "permanent"
    assert classify_tool_error("loop detected on screen") == "stuck"
    assert classify_tool_error("quota reached") == "resource"
    assert classify_tool_error("something odd") == "transient"
