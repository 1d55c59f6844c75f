import asyncio

import pytest

from starlight.bussystem.errors import ApiHttpError, ProviderError, RequestTimeoutError
from starlight.infrastructure.resilience import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    HealthChecker,
    RetryPolicy,
)


class TestCircuitBreaker:
    async def test_opens_after_transport_failures(self, clock):
        breaker = CircuitBreaker("bussystem", failure_threshold=2, recovery_timeout=30, clock=clock)

        async def down():
            raise RequestTimeoutError("/curl/get_routes.php", 15)

        for _ in range(2):
            with pytest.raises(RequestTimeoutError):
                await breaker.async_call(down)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            await breaker.async_call(down)

        async def up():
            return "ok"

        clock.advance(31)
        assert await breaker.async_call(up) == "ok"
        assert breaker.get_state()["state"] == "closed"

    async def test_provider_errors_do_not_trip(self, clock):
        breaker = CircuitBreaker("bussystem", failure_threshold=1, clock=clock)

        async def rejected():
            raise ProviderError("route_no_activ")

        for _ in range(3):
            with pytest.raises(ProviderError):
                await breaker.async_call(rejected)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0


class TestRetryPolicy:
    async def test_linear_backoff(self):
        delays = []

        async def sleep(seconds):
            delays.append(seconds)

        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 4:
                raise ApiHttpError("busy", status=503)
            return "done"

        policy = RetryPolicy(max_attempts=4, backoff_base=1.0, max_delay=2.5, sleep=sleep)
        assert await policy.execute_with_retry(flaky) == "done"
        assert delays == [1.0, 2.0, 2.5]

    async def test_client_errors_are_not_retried(self):
        calls = []

        async def bad():
            calls.append(1)
            raise ApiHttpError("bad request", status=400)

        async def sleep(_):
            raise AssertionError("should not sleep")

        with pytest.raises(ApiHttpError):
            await RetryPolicy(max_attempts=3, sleep=sleep).execute_with_retry(bad)
        assert len(calls) == 1


async def test_health_checker_reports_failures():
    checker = HealthChecker()
    checker.register_check("cache", lambda: True)

    async def provider():
        raise RuntimeError("no route to host")

    checker.register_check("bussystem", provider)
    report = await checker.run_checks()
    assert report["status"] == "unhealthy"
    assert report["checks"]["cache"]["status"] == "healthy"
    assert report["checks"]["bussystem"]["error"] == "no route to host"


async def test_health_checker_timeout_and_interval(clock):
    calls = []

    async def hung():
        calls.append(1)
        await asyncio.sleep(10)

    checker = HealthChecker(clock=clock)
    checker.register_check("bussystem", hung, interval_seconds=30, timeout_seconds=0.01)
    first = await checker.run_checks()
    assert first["checks"]["bussystem"]["error"].startswith("timed out")

    # not due yet: cached result, no new check run
    clock.advance(10)
    await checker.run_checks()
    assert len(calls) == 1
