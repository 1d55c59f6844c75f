import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from datetime import datetime
from enum import Enum

from starlight.bussystem.errors import ApiHttpError, ErrorCode, is_retryable_error
from starlight.obs.logger import log_event


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"      # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitOpenError(ApiHttpError):
    def __init__(self, name: str):
        super().__init__(f"Circuit breaker {name} is OPEN", code=ErrorCode.NETWORK_ERROR)


class CircuitBreaker:
    """Stops hammering the provider after repeated transport failures.

    Only retryable (transport-level) errors count as failures; a provider
    business error means the provider is up.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitState.CLOSED
        self._clock = clock

    async def async_call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self.state = CircuitState.HALF_OPEN
            else:
                raise CircuitOpenError(self.name)

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if is_retryable_error(e):
                self._on_failure()
            else:
                self._on_success()
            raise
        self._on_success()
        return result

    def _on_success(self):
        self.failure_count = 0
        self.state = CircuitState.CLOSED

    def _on_failure(self):
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.failure_count >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                log_event("circuit_open", level="WARNING", name=self.name, failures=self.failure_count)
            self.state = CircuitState.OPEN

    def _should_attempt_reset(self) -> bool:
        return bool(
            self.last_failure_time is not None and
            self._clock() - self.last_failure_time >= self.recovery_timeout
        )

    def get_state(self) -> Dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure": self.last_failure_time
        }


class RetryPolicy:
    """Retry a coroutine with linear backoff while ``should_retry`` allows it."""

    def __init__(
        self,
        max_attempts: int = 2,
        backoff_base: float = 1.0,
        max_delay: float = 10.0,
        should_retry: Callable[[BaseException], bool] = is_retryable_error,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.max_delay = max_delay
        self.should_retry = should_retry
        self._sleep = sleep

    async def execute_with_retry(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        for attempt in range(self.max_attempts):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if attempt >= self.max_attempts - 1 or not self.should_retry(e):
                    raise
                # 1s, 2s, 3s ... like the provider's own SDK samples
                delay = min(self.backoff_base * (attempt + 1), self.max_delay)
                log_event("retry", attempt=attempt + 1, delay_s=delay, error=type(e).__name__)
                await self._sleep(delay)
        raise RuntimeError("retry loop exited without result")


class HealthChecker:
    """Named liveness checks for GET /health.

    Each check is re-run at most once per its interval; in between the last
    result is served. A check that raises or exceeds ``timeout_seconds`` is
    reported unhealthy.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.checks: Dict[str, Dict[str, Any]] = {}
        self.last_check_time: Dict[str, float] = {}
        self.check_results: Dict[str, Dict[str, Any]] = {}
        self._clock = clock

    def register_check(self, name: str, check_func: Callable, interval_seconds: int = 30,
                       timeout_seconds: float = 5.0):
        self.checks[name] = {
            "func": check_func,
            "interval": interval_seconds,
            "timeout": timeout_seconds,
        }

    def _due(self, name: str) -> bool:
        last = self.last_check_time.get(name)
        return last is None or self._clock() - last >= self.checks[name]["interval"]

    async def run_checks(self) -> Dict:
        due = [name for name in self.checks if self._due(name)]
        if due:
            for name, result in await asyncio.gather(*(self._run_single_check(n) for n in due)):
                self.check_results[name] = result
                self.last_check_time[name] = self._clock()

        results = {name: self.check_results.get(name, {"status": "unknown"}) for name in self.checks}
        all_healthy = all(r["status"] == "healthy" for r in results.values() if r["status"] != "unknown")
        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": results,
            "timestamp": datetime.now().isoformat(),
        }

    async def _run_single_check(self, name: str) -> Tuple[str, Dict[str, Any]]:
        check = self.checks[name]
        start = time.monotonic()
        try:
            result = check["func"]()
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=check["timeout"])
        except asyncio.TimeoutError:
            log_event("health_check_failed", level="WARNING", check=name, error="timeout")
            return name, {"status": "unhealthy", "error": f"timed out after {check['timeout']:g}s"}
        except Exception as e:
            log_event("health_check_failed", level="WARNING", check=name, error=str(e))
            return name, {"status": "unhealthy", "error": str(e)}
        return name, {
            "status": "healthy" if result else "unhealthy",
            "duration_ms": int((time.monotonic() - start) * 1000),
        }
