"""
Test the rate-limit circuit breaker and the upstream guard.
"""

import asyncio

import pytest

from holder_rewards.cache import CircuitBreaker, CircuitState, UpstreamGuard
from holder_rewards.core.exceptions import (
    CircuitOpenError,
    InsufficientFundsError,
    RateLimitError,
    TransientUpstreamError,
    UpstreamTimeoutError,
)
from holder_rewards.core.logging import RateLimitLogger


def open_breaker(clock, threshold=3):
    breaker = CircuitBreaker("rpc", threshold=threshold, window_seconds=60, cooldown_seconds=300, clock=clock)
    for _ in range(threshold):
        breaker.record_rate_limit()
    return breaker


def test_opens_after_threshold_within_window(clock):
    breaker = CircuitBreaker("rpc", threshold=3, window_seconds=60, clock=clock)

    breaker.record_rate_limit()
    breaker.record_rate_limit()
    assert breaker.state == CircuitState.CLOSED

    breaker.record_rate_limit()
    assert breaker.state == CircuitState.OPEN
    assert not breaker.allow_request()
    assert breaker.times_opened == 1


def test_old_rate_limits_leave_the_window(clock):
    breaker = CircuitBreaker("rpc", threshold=3, window_seconds=60, clock=clock)

    breaker.record_rate_limit()
    breaker.record_rate_limit()
    clock.advance(61)
    breaker.record_rate_limit()

    assert breaker.state == CircuitState.CLOSED


def test_half_open_allows_single_trial_call(clock):
    breaker = open_breaker(clock)
    clock.advance(300)

    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.allow_request()
    assert not breaker.allow_request()


def test_trial_call_success_closes(clock):
    breaker = open_breaker(clock)
    clock.advance(300)
    breaker.allow_request()

    breaker.record_success()

    assert breaker.state == CircuitState.CLOSED
    assert breaker.allow_request()


def test_trial_call_failure_reopens(clock):
    breaker = open_breaker(clock)
    clock.advance(300)
    breaker.allow_request()

    breaker.record_rate_limit()

    assert breaker.state == CircuitState.OPEN
    assert breaker.retry_in() == 300
    assert breaker.times_opened == 2


def test_plain_failure_only_matters_for_trial_call(clock):
    breaker = CircuitBreaker("rpc", threshold=1, clock=clock)
    breaker.record_failure()
    assert breaker.state == CircuitState.CLOSED

    breaker.record_rate_limit()
    clock.advance(300)
    breaker.allow_request()
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN


def test_status_report(clock):
    breaker = open_breaker(clock)
    clock.advance(100)

    status = breaker.get_status()

    assert status["name"] == "rpc"
    assert status["state"] == "open"
    assert status["retry_in_seconds"] == 200


def make_guard(clock, threshold=3, timeout=5.0):
    breaker = CircuitBreaker("rpc", threshold=threshold, window_seconds=60, cooldown_seconds=300, clock=clock)
    return UpstreamGuard("rpc", breaker, timeout=timeout, rate_limit_logger=RateLimitLogger(clock=clock))


@pytest.mark.asyncio
async def test_guard_classifies_rate_limit_text(clock):
    guard = make_guard(clock)

    async def limited():
        raise RuntimeError("HTTP 429 Too Many Requests")

    for _ in range(3):
        with pytest.raises(RateLimitError):
            await guard.call(limited)

    with pytest.raises(CircuitOpenError):
        await guard.call(limited)


@pytest.mark.asyncio
async def test_guard_wraps_unexpected_errors(clock):
    guard = make_guard(clock)

    async def broken():
        raise ValueError("connection reset")

    with pytest.raises(TransientUpstreamError) as exc_info:
        await guard.call(broken, operation="fetch")

    assert exc_info.value.details["operation"] == "fetch"
    assert guard.breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_guard_times_out(clock):
    guard = make_guard(clock, timeout=0.01)

    async def slow():
        await asyncio.sleep(1)

    with pytest.raises(UpstreamTimeoutError):
        await guard.call(slow)


@pytest.mark.asyncio
async def test_guard_passes_domain_errors_through(clock):
    guard = make_guard(clock)

    async def poor():
        raise InsufficientFundsError(100, 10)

    with pytest.raises(InsufficientFundsError):
        await guard.call(poor)


@pytest.mark.asyncio
async def test_guard_returns_result_and_forwards_arguments(clock):
    guard = make_guard(clock)

    async def add(a, b, scale=1):
        return (a + b) * scale

    assert await guard.call(add, 1, 2, scale=3) == 9


def test_rate_limit_logger_suppresses_repeats(clock):
    limiter = RateLimitLogger(max_logs_per_message=2, window_seconds=60, clock=clock)

    emitted = [limiter.log("rate limited", upstream="rpc") for _ in range(5)]

    assert emitted == [True, True, False, False, False]
    assert limiter.summary()["suppressed_messages"] == 1

    clock.advance(61)
    assert limiter.log("rate limited", upstream="rpc")


@pytest.mark.asyncio
async def test_cancelled_trial_call_frees_the_half_open_slot(clock):
    guard = make_guard(clock)
    for _ in range(3):
        guard.breaker.record_rate_limit()
    clock.advance(300)
    started = asyncio.Event()

    async def hanging():
        started.set()
        await asyncio.sleep(10)

    trial = asyncio.create_task(guard.call(hanging))
    await started.wait()
    trial.cancel()
    with pytest.raises(asyncio.CancelledError):
        await trial

    assert guard.breaker.state == CircuitState.HALF_OPEN

    async def healthy():
        return "ok"

    assert await guard.call(healthy) == "ok"
    assert guard.breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_cancelled_call_keeps_a_trial_slot_it_did_not_claim(clock):
    guard = make_guard(clock)
    started = asyncio.Event()

    async def hanging():
        started.set()
        await asyncio.sleep(10)

    call = asyncio.create_task(guard.call(hanging))
    await started.wait()

    for _ in range(3):
        guard.breaker.record_rate_limit()
    clock.advance(300)
    assert guard.breaker.allow_request()

    call.cancel()
    with pytest.raises(asyncio.CancelledError):
        await call

    assert not guard.breaker.allow_request()
