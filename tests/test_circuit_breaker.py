"""
Tests for the circuit breaker state machine and the breaker registry.
"""

import asyncio

import pytest

from backstop import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitBreakerRegistry,
    CircuitState,
    ConfigurationError,
    get_circuit_breaker_registry,
    with_retry,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class Counter:
    """Async operation that counts calls and fails or succeeds on demand."""

    def __init__(self, error=None, result="success", delay=0.0):
        self.error = error
        self.result = result
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


async def _fail_times(breaker, operation, times):
    for _ in range(times):
        with pytest.raises(Exception):
            await breaker.execute(operation)


class TestCircuitBreakerConstruction:
    def test_initial_state_closed(self):
        breaker = CircuitBreaker(3, 1.0, 2)
        assert breaker.get_state() == CircuitState.CLOSED
        assert breaker.get_state() == "CLOSED"
        assert breaker.failure_count == 0
        assert breaker.success_count == 0
        assert breaker.opened_at is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"failure_threshold": 0},
            {"reset_timeout": -1.0},
            {"success_threshold": 0},
            {"half_open_max_calls": 0},
        ],
    )
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ConfigurationError):
            CircuitBreaker(**kwargs)


class TestCircuitBreaker:
    """Tests for execute() and the state machine."""

    @pytest.mark.asyncio
    async def test_allows_calls_when_closed(self):
        breaker = CircuitBreaker(3, 1.0, 2)
        operation = Counter()

        assert await breaker.execute(operation) == "success"
        assert breaker.get_state() == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_error_propagates_unchanged(self):
        breaker = CircuitBreaker(3, 1.0, 2)
        error = RuntimeError("Service failed")

        with pytest.raises(RuntimeError) as exc_info:
            await breaker.execute(Counter(error=error))

        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_opens_after_failure_threshold(self):
        """Exactly N consecutive failures open the circuit."""
        breaker = CircuitBreaker(3, 1.0, 2)
        operation = Counter(error=RuntimeError("Service failed"))

        await _fail_times(breaker, operation, 2)
        assert breaker.get_state() == CircuitState.CLOSED
        assert breaker.failure_count == 2

        await _fail_times(breaker, operation, 1)
        assert breaker.get_state() == CircuitState.OPEN
        assert breaker.opened_at is not None

    @pytest.mark.asyncio
    async def test_rejects_without_invoking_when_open(self):
        """CircuitBreaker(3, 1000ms, 2): the 4th call fails fast, invocation count stays 3."""
        breaker = CircuitBreaker(3, 1.0, 2)
        operation = Counter(error=RuntimeError("Service failed"))

        await _fail_times(breaker, operation, 3)

        with pytest.raises(CircuitBreakerOpenError, match="Circuit breaker is OPEN") as exc_info:
            await breaker.execute(operation)

        assert operation.calls == 3
        assert exc_info.value.breaker == "default"
        assert 0 < exc_info.value.retry_after <= 1.0

    @pytest.mark.asyncio
    async def test_half_open_probe_after_timeout(self):
        clock = FakeClock()
        breaker = CircuitBreaker(2, 0.1, 2, clock=clock)
        await _fail_times(breaker, Counter(error=RuntimeError("Service failed")), 2)
        assert breaker.get_state() == CircuitState.OPEN

        clock.advance(0.15)
        # No lazy prediction: still OPEN until a call arrives
        assert breaker.get_state() == CircuitState.OPEN

        probe = Counter()
        assert await breaker.execute(probe) == "success"
        assert probe.calls == 1
        assert breaker.get_state() == CircuitState.HALF_OPEN
        assert breaker.success_count == 1

    @pytest.mark.asyncio
    async def test_half_open_with_real_time(self):
        breaker = CircuitBreaker(2, 0.1, 2)
        await _fail_times(breaker, Counter(error=RuntimeError("Service failed")), 2)

        await asyncio.sleep(0.15)
        await breaker.execute(Counter())

        assert breaker.get_state() != CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_closes_after_success_threshold(self):
        clock = FakeClock()
        breaker = CircuitBreaker(2, 0.1, 2, clock=clock)
        await _fail_times(breaker, Counter(error=RuntimeError("Failed")), 2)
        clock.advance(0.15)

        success = Counter()
        await breaker.execute(success)
        await breaker.execute(success)

        assert breaker.get_state() == CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.success_count == 0
        assert breaker.opened_at is None

    @pytest.mark.asyncio
    async def test_reopens_on_probe_failure(self):
        clock = FakeClock()
        breaker = CircuitBreaker(2, 0.1, 3, clock=clock)
        failing = Counter(error=RuntimeError("Failed"))
        await _fail_times(breaker, failing, 2)
        first_opened_at = breaker.opened_at

        clock.advance(0.2)
        await breaker.execute(Counter())
        assert breaker.get_state() == CircuitState.HALF_OPEN

        await _fail_times(breaker, failing, 1)
        assert breaker.get_state() == CircuitState.OPEN
        assert breaker.success_count == 0
        assert breaker.opened_at > first_opened_at

        # New cooldown starts from the re-open
        with pytest.raises(CircuitBreakerOpenError):
            await breaker.execute(failing)

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker(3, 1.0, 2)
        failing = Counter(error=RuntimeError("Failed"))

        await _fail_times(breaker, failing, 2)
        await breaker.execute(Counter())
        assert breaker.failure_count == 0

        await _fail_times(breaker, failing, 2)
        assert breaker.get_state() == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_manual_reset_from_open(self):
        breaker = CircuitBreaker(2, 1.0, 2)
        await _fail_times(breaker, Counter(error=RuntimeError("Failed")), 2)
        assert breaker.get_state() == CircuitState.OPEN

        breaker.reset()

        assert breaker.get_state() == CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.success_count == 0
        assert await breaker.execute(Counter()) == "success"

    @pytest.mark.asyncio
    async def test_manual_reset_from_half_open(self):
        clock = FakeClock()
        breaker = CircuitBreaker(1, 0.1, 3, clock=clock)
        await _fail_times(breaker, Counter(error=RuntimeError("Failed")), 1)
        clock.advance(0.2)
        await breaker.execute(Counter())
        assert breaker.get_state() == CircuitState.HALF_OPEN

        breaker.reset()
        assert breaker.get_state() == CircuitState.CLOSED
        assert breaker.success_count == 0

    @pytest.mark.asyncio
    async def test_rapid_concurrent_failures(self):
        breaker = CircuitBreaker(5, 1.0, 2)
        operation = Counter(error=RuntimeError("Failed"))

        results = await asyncio.gather(*(breaker.execute(operation) for _ in range(10)), return_exceptions=True)

        assert all(isinstance(r, Exception) for r in results)
        assert breaker.get_state() == CircuitState.OPEN
        assert operation.calls <= 10

    @pytest.mark.asyncio
    async def test_stragglers_do_not_extend_cooldown(self):
        """Failures settling after the circuit opened leave opened_at alone."""
        breaker = CircuitBreaker(2, 1.0, 2)
        operation = Counter(error=RuntimeError("Failed"), delay=0.01)

        await asyncio.gather(*(breaker.execute(operation) for _ in range(5)), return_exceptions=True)

        assert operation.calls == 5
        assert breaker.get_state() == CircuitState.OPEN
        opened_at = breaker.opened_at
        breaker.record_failure()
        assert breaker.opened_at == opened_at

    @pytest.mark.asyncio
    async def test_closed_era_success_does_not_settle_half_open(self):
        """A call admitted while CLOSED cannot close the breaker during recovery."""
        clock = FakeClock()
        breaker = CircuitBreaker(2, 1.0, 1, clock=clock)
        straggler_done = asyncio.Event()
        probe_done = asyncio.Event()

        async def slow_success():
            await straggler_done.wait()
            return "late"

        async def slow_failure():
            await probe_done.wait()
            raise ConnectionError("still down")

        straggler = asyncio.create_task(breaker.execute(slow_success))
        await asyncio.sleep(0)
        await _fail_times(breaker, Counter(error=RuntimeError("Failed")), 2)
        assert breaker.get_state() == CircuitState.OPEN

        clock.advance(1.5)
        probe = asyncio.create_task(breaker.execute(slow_failure))
        await asyncio.sleep(0)
        assert breaker.get_state() == CircuitState.HALF_OPEN

        straggler_done.set()
        assert await straggler == "late"
        assert breaker.get_state() == CircuitState.HALF_OPEN
        assert breaker.success_count == 0

        probe_done.set()
        with pytest.raises(ConnectionError):
            await probe
        assert breaker.get_state() == CircuitState.OPEN
        assert breaker.get_stats()["total_successes"] == 1

    @pytest.mark.asyncio
    async def test_stale_probe_failure_does_not_reopen(self):
        """A probe from a finished recovery period leaves the closed breaker alone."""
        clock = FakeClock()
        breaker = CircuitBreaker(1, 1.0, 1, half_open_max_calls=2, clock=clock)
        await _fail_times(breaker, Counter(error=RuntimeError("Failed")), 1)
        clock.advance(1.5)

        release = asyncio.Event()

        async def slow_failure():
            await release.wait()
            raise ConnectionError("late")

        slow_probe = asyncio.create_task(breaker.execute(slow_failure))
        await asyncio.sleep(0)
        assert await breaker.execute(Counter()) == "success"
        assert breaker.get_state() == CircuitState.CLOSED

        release.set()
        with pytest.raises(ConnectionError):
            await slow_probe
        assert breaker.get_state() == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_concurrent_probes_limited(self):
        """Only half_open_max_calls probes run at once; extra callers fail fast."""
        clock = FakeClock()
        breaker = CircuitBreaker(1, 0.1, 1, clock=clock)
        await _fail_times(breaker, Counter(error=RuntimeError("Failed")), 1)
        clock.advance(0.2)

        probe = Counter(delay=0.02)
        results = await asyncio.gather(breaker.execute(probe), breaker.execute(probe), return_exceptions=True)

        assert probe.calls == 1
        assert results[0] == "success"
        assert isinstance(results[1], CircuitBreakerOpenError)
        assert results[1].state == "HALF_OPEN"
        assert breaker.get_state() == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_multiple_probes_allowed_when_configured(self):
        clock = FakeClock()
        breaker = CircuitBreaker(1, 0.1, 2, half_open_max_calls=2, clock=clock)
        await _fail_times(breaker, Counter(error=RuntimeError("Failed")), 1)
        clock.advance(0.2)

        probe = Counter(delay=0.01)
        await asyncio.gather(breaker.execute(probe), breaker.execute(probe))

        assert probe.calls == 2
        assert breaker.get_state() == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_untracked_exceptions_ignored(self):
        breaker = CircuitBreaker(1, 1.0, 1, tracked_exceptions=(ConnectionError,))

        with pytest.raises(ValueError):
            await breaker.execute(Counter(error=ValueError("bad payload")))
        assert breaker.get_state() == CircuitState.CLOSED

        with pytest.raises(ConnectionError):
            await breaker.execute(Counter(error=ConnectionError("down")))
        assert breaker.get_state() == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_cascading_failure_protection(self):
        """Ten calls to a dead service invoke it only up to the threshold."""
        breaker = CircuitBreaker(3, 0.1, 2)
        service = Counter(error=RuntimeError("Service unavailable"))

        for _ in range(10):
            with pytest.raises(Exception):
                await breaker.execute(service)

        assert service.calls == 3

    @pytest.mark.asyncio
    async def test_protect_decorator(self):
        breaker = CircuitBreaker(1, 1.0, 1, name="openai")

        @breaker.protect
        async def complete(prompt):
            raise ConnectionError(prompt)

        with pytest.raises(ConnectionError):
            await complete("hello")
        with pytest.raises(CircuitBreakerOpenError, match="openai"):
            await complete("hello")

    @pytest.mark.asyncio
    async def test_stats(self):
        breaker = CircuitBreaker(2, 1.0, 2, name="twitter")
        failing = Counter(error=RuntimeError("Failed"))
        await breaker.execute(Counter())
        await _fail_times(breaker, failing, 3)

        stats = breaker.get_stats()
        assert stats["name"] == "twitter"
        assert stats["state"] == "OPEN"
        assert stats["total_calls"] == 3
        assert stats["total_successes"] == 1
        assert stats["total_failures"] == 2
        assert stats["total_rejections"] == 1
        assert 0 <= stats["time_until_half_open"] <= 1.0


class TestComposition:
    """Retry and circuit breaker used together."""

    @pytest.mark.asyncio
    async def test_retry_around_breaker_stops_on_open(self):
        """An open circuit is not a retryable signature, so retrying stops immediately."""
        breaker = CircuitBreaker(2, 10.0, 1)
        service = Counter(error=ConnectionResetError("ECONNRESET"))

        with pytest.raises(CircuitBreakerOpenError):
            await with_retry(lambda: breaker.execute(service), max_attempts=5, initial_delay=0.001)

        assert service.calls == 2

    @pytest.mark.asyncio
    async def test_breaker_around_retry_counts_once(self):
        breaker = CircuitBreaker(2, 10.0, 1)
        service = Counter(error=ConnectionResetError("ECONNRESET"))

        with pytest.raises(ConnectionResetError):
            await breaker.execute(lambda: with_retry(service, max_attempts=3, initial_delay=0.001))

        assert service.calls == 3
        assert breaker.failure_count == 1


class TestCircuitBreakerRegistry:
    """Tests for the keyed registry."""

    def test_get_creates_once(self):
        registry = CircuitBreakerRegistry()
        breaker = registry.get("instagram")
        assert registry.get("instagram") is breaker
        assert breaker.name == "instagram"
        assert "instagram" in registry
        assert registry.names() == ["instagram"]

    def test_defaults_and_overrides(self):
        registry = CircuitBreakerRegistry(
            defaults={"failure_threshold": 3},
            overrides={"openai": {"reset_timeout": "120"}},
        )
        openai = registry.get("openai")
        linkedin = registry.get("linkedin", success_threshold=4)

        assert openai.failure_threshold == 3
        assert openai.reset_timeout == 120.0
        assert linkedin.reset_timeout == 60.0
        assert linkedin.success_threshold == 4

    def test_unknown_setting(self):
        with pytest.raises(ConfigurationError, match="Unknown circuit breaker setting"):
            CircuitBreakerRegistry(defaults={"timeout": 5})

    def test_from_config(self):
        registry = CircuitBreakerRegistry.from_config(
            {"circuit_breakers": {"defaults": {"failure_threshold": 2}, "tiktok": {"success_threshold": 3}}}
        )
        tiktok = registry.get("tiktok")
        assert tiktok.failure_threshold == 2
        assert tiktok.success_threshold == 3

    @pytest.mark.asyncio
    async def test_reset_all(self):
        registry = CircuitBreakerRegistry(defaults={"failure_threshold": 1})
        for name in ("facebook", "youtube"):
            with pytest.raises(RuntimeError):
                await registry.get(name).execute(Counter(error=RuntimeError("down")))

        assert registry.get_stats()["facebook"]["state"] == "OPEN"
        registry.reset_all()
        assert all(registry.get(name).get_state() == CircuitState.CLOSED for name in registry)

    def test_reset_missing(self):
        with pytest.raises(KeyError):
            CircuitBreakerRegistry().reset("missing")

    def test_global_registry(self):
        registry = get_circuit_breaker_registry()
        assert get_circuit_breaker_registry() is registry
        assert registry.get("pinterest") is get_circuit_breaker_registry().get("pinterest")
