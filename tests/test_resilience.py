#!/usr/bin/env python3
"""Tests for the circuit breaker and the client retry loop.

Tests cover:
    - Circuit breaker state transitions (CLOSED -> OPEN -> HALF_OPEN -> CLOSED)
    - Client retry behavior for 401, 429, 5xx and non-retryable errors
    - Circuit breaker integration in the client

The client tests replace ApiSyncClient._request so no HTTP session is needed.
"""
import asyncio
import sys
from unittest.mock import AsyncMock, patch

import pytest

sys.path.insert(0, str(__file__).rsplit("/tests", 1)[0])
from conftest import StaticTokenProvider
from src.apisync.api.client import ApiSyncClient
from src.apisync.api.exceptions import (
    CircuitOpenError,
    ConnectionError,
    NotFoundError,
    RateLimitError,
    ServerError,
    TimeoutError,
    TokenExpiredError,
)
from src.apisync.api.resilience import CircuitBreaker, CircuitState


# ============================================
# Circuit Breaker State Transition Tests
# ============================================

class TestCircuitBreakerStateTransitions:
    """Test circuit breaker state machine transitions."""

    def test_initial_state_is_closed(self):
        circuit = CircuitBreaker(failure_threshold=3)
        assert circuit.state == CircuitState.CLOSED
        assert not circuit.is_open
        assert circuit.failure_count == 0
        assert circuit.reset_at is None

    @pytest.mark.asyncio
    async def test_closed_to_open_after_failures(self):
        circuit = CircuitBreaker(failure_threshold=3, timeout=60.0)

        for i in range(2):
            await circuit.record_failure(ServerError("fail", status_code=500))
            assert circuit.state == CircuitState.CLOSED
            assert circuit.failure_count == i + 1

        await circuit.record_failure(ServerError("fail", status_code=500))

        assert circuit.is_open
        assert not circuit.allow_request()
        assert circuit.reset_at is not None

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        circuit = CircuitBreaker(failure_threshold=3)
        await circuit.record_failure(ServerError("fail", status_code=500))
        await circuit.record_failure(ServerError("fail", status_code=500))

        await circuit.record_success()

        assert circuit.failure_count == 0
        assert circuit.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_open_to_half_open_after_timeout(self):
        circuit = CircuitBreaker(failure_threshold=1, timeout=0.1)
        await circuit.record_failure(ServerError("fail", status_code=500))
        assert not circuit.allow_request()

        await asyncio.sleep(0.15)

        assert circuit.allow_request()
        assert circuit.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_half_open_to_closed_on_success(self):
        circuit = CircuitBreaker(failure_threshold=1, timeout=0.1, success_threshold=2)
        await circuit.record_failure(ServerError("fail", status_code=500))
        await asyncio.sleep(0.15)
        circuit.allow_request()

        await circuit.record_success()
        assert circuit.state == CircuitState.HALF_OPEN

        await circuit.record_success()
        assert circuit.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_to_open_on_failure(self):
        circuit = CircuitBreaker(failure_threshold=1, timeout=0.1)
        await circuit.record_failure(ServerError("fail", status_code=500))
        await asyncio.sleep(0.15)
        circuit.allow_request()

        await circuit.record_failure(ServerError("fail again", status_code=500))

        assert circuit.state == CircuitState.OPEN

    def test_manual_reset(self):
        circuit = CircuitBreaker(failure_threshold=1)
        circuit._state = CircuitState.OPEN
        circuit._failure_count = 10

        circuit.reset()

        assert circuit.state == CircuitState.CLOSED
        assert circuit.failure_count == 0

    def test_get_status_returns_monitoring_data(self):
        circuit = CircuitBreaker(failure_threshold=5, timeout=60.0, name="test_circuit")

        status = circuit.get_status()

        assert status == {
            "name": "test_circuit",
            "state": "closed",
            "failure_count": 0,
            "failure_threshold": 5,
            "timeout_seconds": 60.0,
            "last_failure_at": None,
        }


# ============================================
# Client Retry Tests
# ============================================

@pytest.fixture
def token_provider():
    return StaticTokenProvider()


@pytest.fixture
def client(token_provider):
    return ApiSyncClient(token_provider, base_url="https://erp.example.com/odata/", circuit_failure_threshold=2)


@pytest.fixture
def no_sleep():
    with patch("src.apisync.api.client.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


class TestClientRetry:
    """Test ApiSyncClient._request_with_retry."""

    def test_base_url_is_normalized(self, client):
        assert client._url("Products") == "https://erp.example.com/odata/Products"
        assert client._url("https://other.example.com/next") == "https://other.example.com/next"

    @pytest.mark.asyncio
    async def test_succeeds_first_attempt(self, client):
        client._request = AsyncMock(return_value={"Id": 1})

        assert await client.get("/Products(1)") == {"Id": 1}
        assert client._request.await_count == 1

    @pytest.mark.asyncio
    async def test_server_error_retried(self, client, no_sleep):
        client._request = AsyncMock(side_effect=[ServerError("down", status_code=503), {"Id": 1}])

        assert await client.get("/Products(1)") == {"Id": 1}
        no_sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_rate_limit_waits_retry_after(self, client, no_sleep):
        client._request = AsyncMock(side_effect=[RateLimitError(retry_after=7), {"Id": 1}])

        await client.get("/Products(1)")

        no_sleep.assert_awaited_once_with(7)

    @pytest.mark.asyncio
    async def test_expired_token_invalidated_and_retried(self, client, token_provider):
        client._request = AsyncMock(side_effect=[TokenExpiredError(), {"Id": 1}])

        assert await client.get("/Products(1)") == {"Id": 1}
        assert token_provider.invalidated == 1

    @pytest.mark.asyncio
    async def test_not_found_fails_immediately(self, client):
        client._request = AsyncMock(side_effect=NotFoundError("Products", "1"))

        with pytest.raises(NotFoundError):
            await client.get("/Products(1)")

        assert client._request.await_count == 1
        assert client.circuit_status["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_last_error(self, client, no_sleep):
        client._request = AsyncMock(side_effect=ServerError("down", status_code=500))

        with pytest.raises(ServerError):
            await client.get("/Products(1)")

        assert client._request.await_count == 3
        assert client.circuit_status["failure_count"] == 1


class TestNonIdempotentRetry:
    """POST is never resent once it may have reached the server."""

    @pytest.mark.asyncio
    async def test_post_not_resent_after_timeout(self, client, no_sleep):
        client._request = AsyncMock(side_effect=[TimeoutError("timed out"), {"Id": "R2"}])

        with pytest.raises(TimeoutError):
            await client.post("/Products", {"Name": "Lamp"})

        assert client._request.await_count == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_post_not_resent_after_server_error(self, client, no_sleep):
        client._request = AsyncMock(side_effect=[ServerError("down", status_code=502), {"Id": "R2"}])

        with pytest.raises(ServerError):
            await client.post("/Products", {"Name": "Lamp"})

        assert client._request.await_count == 1

    @pytest.mark.asyncio
    async def test_post_resent_after_connect_failure(self, client, no_sleep):
        client._request = AsyncMock(side_effect=[ConnectionError(host="erp.example.com"), {"Id": "R2"}])

        assert await client.post("/Products", {"Name": "Lamp"}) == {"Id": "R2"}
        assert client._request.await_count == 2

    @pytest.mark.asyncio
    async def test_post_resent_after_rate_limit(self, client, no_sleep):
        client._request = AsyncMock(side_effect=[RateLimitError(retry_after=2), {"Id": "R2"}])

        assert await client.post("/Products", {"Name": "Lamp"}) == {"Id": "R2"}
        no_sleep.assert_awaited_once_with(2)

    @pytest.mark.asyncio
    async def test_patch_still_retried_after_timeout(self, client, no_sleep):
        client._request = AsyncMock(side_effect=[TimeoutError("timed out"), {}])

        assert await client.patch("/Products('R2')", {"Name": "Lamp"}) == {}
        assert client._request.await_count == 2


class TestResilienceIntegration:
    """Test the circuit breaker inside the client."""

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_request(self, client, no_sleep):
        client._request = AsyncMock(side_effect=ServerError("down", status_code=500))

        for _ in range(2):
            with pytest.raises(ServerError):
                await client.get("/Products(1)")
        calls = client._request.await_count

        with pytest.raises(CircuitOpenError):
            await client.get("/Products(1)")

        assert client._request.await_count == calls
        assert client.circuit_status["state"] == "open"

    def test_circuit_can_be_disabled(self, token_provider):
        client = ApiSyncClient(token_provider, base_url="https://erp.example.com", enable_circuit_breaker=False)
        assert client.circuit_status is None
