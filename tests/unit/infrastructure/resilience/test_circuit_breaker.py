# tests/unit/infrastructure/resilience/test_circuit_breaker.py
import pytest
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from domain.errors import CircuitOpenError, PermanentProviderError, TransientProviderError
from infrastructure.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitBreakerConfig,
    CircuitState,
)
from shared.clock import utc_now

@pytest.fixture
def mock_db_pool():
    """Mock database pool for testing"""
    pool = MagicMock()
    conn = AsyncMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.acquire.return_value.__aexit__.return_value = None

    # No existing state
    conn.fetchrow.return_value = None
    conn.execute.return_value = None

    return pool

@pytest.fixture
def circuit_config():
    """Default circuit breaker configuration for testing"""
    return CircuitBreakerConfig(
        failure_threshold=3,
        recovery_timeout=timedelta(seconds=5),
        success_threshold=2,
        timeout_seconds=1.0
    )

class TestCircuitBreaker:
    """Test circuit breaker functionality"""

    @pytest.mark.asyncio
    async def test_circuit_breaker_initialization(self, mock_db_pool, circuit_config):
        """Test circuit breaker initialization"""
        breaker = CircuitBreaker("provider:economy", circuit_config, mock_db_pool)

        await breaker.initialize()

        assert breaker.resource_name == "provider:economy"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_initialization_restores_persisted_state(self, mock_db_pool, circuit_config):
        """Persisted state is loaded on initialize"""
        conn = mock_db_pool.acquire.return_value.__aenter__.return_value
        conn.fetchrow.return_value = {
            "state": "open", "failure_count": 4,
            "last_failure_time": utc_now(), "success_count": 0,
        }
        breaker = CircuitBreaker("provider:premium", circuit_config, mock_db_pool)

        await breaker.initialize()

        assert breaker.state == CircuitState.OPEN
        assert breaker.failure_count == 4

    @pytest.mark.asyncio
    async def test_successful_call(self, circuit_config):
        """Test successful call through the breaker without persistence"""
        breaker = CircuitBreaker("provider:economy", circuit_config)

        async def success_func():
            return "success"

        assert await breaker.call(success_func) == "success"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_transient_failures_open_circuit(self, mock_db_pool, circuit_config):
        """Transient failures accumulate until the circuit opens"""
        breaker = CircuitBreaker("provider:standard", circuit_config, mock_db_pool)

        async def failing_func():
            raise TransientProviderError("rate limited")

        for i in range(circuit_config.failure_threshold - 1):
            with pytest.raises(TransientProviderError):
                await breaker.call(failing_func)
            assert breaker.state == CircuitState.CLOSED
            assert breaker.failure_count == i + 1

        with pytest.raises(TransientProviderError):
            await breaker.call(failing_func)

        assert breaker.state == CircuitState.OPEN
        conn = mock_db_pool.acquire.return_value.__aenter__.return_value
        assert conn.execute.await_count >= circuit_config.failure_threshold

    @pytest.mark.asyncio
    async def test_permanent_failures_do_not_count(self, circuit_config):
        """Permanent errors propagate without touching breaker health"""
        breaker = CircuitBreaker("provider:standard", circuit_config)

        async def bad_request():
            raise PermanentProviderError("bad request")

        for _ in range(circuit_config.failure_threshold + 1):
            with pytest.raises(PermanentProviderError):
                await breaker.call(bad_request)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_circuit_open_behavior(self, circuit_config):
        """Calls are rejected while the circuit is open"""
        breaker = CircuitBreaker("provider:economy", circuit_config)
        await breaker.force_open()
        func = AsyncMock(return_value="should not execute")

        with pytest.raises(CircuitOpenError):
            await breaker.call(func)

        func.assert_not_called()

    @pytest.mark.asyncio
    async def test_circuit_recovery(self, circuit_config):
        """Open to half-open to closed after the recovery timeout"""
        breaker = CircuitBreaker("provider:economy", circuit_config)
        breaker.state = CircuitState.OPEN
        breaker.last_failure_time = utc_now() - circuit_config.recovery_timeout - timedelta(seconds=1)

        async def success_func():
            return "success"

        await breaker.call(success_func)
        assert breaker.state == CircuitState.HALF_OPEN

        await breaker.call(success_func)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, circuit_config):
        """A failure while half-open reopens the circuit"""
        breaker = CircuitBreaker("provider:economy", circuit_config)
        breaker.state = CircuitState.OPEN
        breaker.last_failure_time = utc_now() - circuit_config.recovery_timeout - timedelta(seconds=1)

        async def failing_func():
            raise TransientProviderError("still down")

        with pytest.raises(TransientProviderError):
            await breaker.call(failing_func)

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        """Slow calls become transient provider errors"""
        breaker = CircuitBreaker("provider:economy", CircuitBreakerConfig(timeout_seconds=0.01))

        async def slow_func():
            await asyncio.sleep(1)

        with pytest.raises(TransientProviderError):
            await breaker.call(slow_func)

        assert breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_persist_failure_is_logged_not_raised(self, mock_db_pool, circuit_config):
        """Database errors while persisting do not break calls"""
        conn = mock_db_pool.acquire.return_value.__aenter__.return_value
        conn.execute.side_effect = Exception("db down")
        breaker = CircuitBreaker("provider:economy", circuit_config, mock_db_pool)

        await breaker.force_open()

        assert breaker.state == CircuitState.OPEN


class TestCircuitBreakerRegistry:
    """Test circuit breaker registry"""

    @pytest.mark.asyncio
    async def test_get_breaker_is_cached(self, circuit_config):
        """One breaker per resource name"""
        registry = CircuitBreakerRegistry()

        first = await registry.get_breaker("provider:economy", circuit_config)
        second = await registry.get_breaker("provider:economy", circuit_config)
        other = await registry.get_breaker("provider:premium", circuit_config)

        assert first is second
        assert first is not other

    @pytest.mark.asyncio
    async def test_get_all_status(self, circuit_config):
        """Status covers every registered breaker"""
        registry = CircuitBreakerRegistry()
        breaker = await registry.get_breaker("provider:standard", circuit_config)
        await breaker.force_open()

        status = await registry.get_all_status()

        assert status["provider:standard"]["state"] == "open"
        assert status["provider:standard"]["last_failure_time"] is not None
