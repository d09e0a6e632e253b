"""
Tests for the Redis subscriber loop and its resilience components.

Tests verify:
- Circuit breaker transitions (closed, open, half-open, closed)
- Jittered backoff stays within its bounds
- The subscriber hands message data to its callback and survives bad messages
- A dropped connection is replaced by a fresh subscription
- Reconnecting keeps going for as long as Redis stays down
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import redis.exceptions

from ws_gateway.components.core.constants import WSConstants
from ws_gateway.components.resilience.circuit_breaker import CircuitBreaker, CircuitState
from ws_gateway.components.resilience.retry import RetryConfig, calculate_delay_with_jitter
from ws_gateway.redis_subscriber import get_subscriber_metrics, run_subscriber


class FakePubSub:
    """Pub/sub handle that replays a scripted list of messages or errors."""

    def __init__(self, script=(), fail_subscribe=False):
        self.script = list(script)
        self.fail_subscribe = fail_subscribe
        self.channels: list[str] = []
        self.closed = False

    async def subscribe(self, *channels):
        if self.fail_subscribe:
            raise redis.exceptions.ConnectionError("still down")
        self.channels.extend(channels)

    async def unsubscribe(self, *channels):
        self.channels = [c for c in self.channels if c not in channels]

    async def aclose(self):
        self.closed = True

    async def get_message(self, ignore_subscribe_messages=False, timeout=None):
        if not self.script:
            return None
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.fixture(autouse=True)
def fresh_breaker():
    """Each test starts with a closed subscriber circuit."""
    with patch(
        "ws_gateway.redis_subscriber._redis_circuit_breaker",
        CircuitBreaker("redis_subscriber", failure_threshold=1000),
    ):
        yield


def message(data, channel="presence_updates"):
    return {"type": "message", "channel": channel, "data": data}


async def collect_until(client, expected_count):
    """Run the subscriber until the callback has seen expected_count payloads."""
    received: list[str] = []
    done = asyncio.Event()

    async def on_message(data: str) -> None:
        received.append(data)
        if data == "boom":
            raise ValueError("handler failed")
        if len(received) >= expected_count:
            done.set()

    task = asyncio.create_task(run_subscriber(client, ["presence_updates"], on_message))
    await asyncio.wait_for(done.wait(), timeout=2)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    return received


class TestCircuitBreaker:
    """State machine of the subscriber's circuit breaker."""

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("test", failure_threshold=3, recovery_timeout=60)
        for _ in range(2):
            breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

        breaker.record_failure(ConnectionError("down"))

        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False
        assert breaker.get_stats()["rejected_calls"] == 1

    def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("test", failure_threshold=2)
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_trial_closes(self):
        breaker = CircuitBreaker(
            "test", failure_threshold=1, recovery_timeout=0, half_open_max_calls=1
        )
        breaker.record_failure()

        assert breaker.allow_request() is True
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request() is False

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_stats()["state_changes"] == 3

    def test_half_open_failure_reopens(self):
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=0)
        breaker.record_failure()
        breaker.allow_request()

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN

    def test_recovery_waits_for_timeout(self):
        now = [100.0]
        breaker = CircuitBreaker(
            "test", failure_threshold=2, recovery_timeout=30, clock=lambda: now[0]
        )
        breaker.record_failure()
        breaker.record_failure()

        now[0] += 29
        assert breaker.allow_request() is False
        now[0] += 2
        assert breaker.allow_request() is True
        assert breaker.get_stats() == {
            "state": "half_open",
            "consecutive_failures": 2,
            "rejected_calls": 1,
            "state_changes": 2,
        }


class TestBackoff:
    """Jittered exponential delays."""

    def test_delay_bounds(self):
        config = RetryConfig(initial_delay=1.0, max_delay=8.0, jitter_factor=0.25)
        for attempt, base in [(0, 1.0), (1, 2.0), (2, 4.0), (5, 8.0)]:
            delay = calculate_delay_with_jitter(attempt, config)
            assert base * 0.75 <= delay <= base * 1.25

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"initial_delay": 0},
            {"initial_delay": 5.0, "max_delay": 1.0},
            {"backoff_base": 0.5},
            {"jitter_factor": 1.5},
            {"max_attempts": 0},
        ],
    )
    def test_invalid_config(self, kwargs):
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)


class TestRunSubscriber:
    """The pub/sub loop behind KVSClient.subscribe."""

    @pytest.mark.asyncio
    async def test_delivers_and_survives_bad_messages(self):
        before = get_subscriber_metrics()
        pubsub = FakePubSub([
            message("x" * (WSConstants.MAX_ENVELOPE_SIZE + 1)),
            {"type": "subscribe", "channel": "presence_updates", "data": 1},
            message(b"not-decoded"),
            message("boom"),
            message("ok"),
        ])
        client = MagicMock()
        client.pubsub.return_value = pubsub

        received = await collect_until(client, expected_count=2)

        assert received == ["boom", "ok"]
        after = get_subscriber_metrics()
        assert after["oversized"] == before["oversized"] + 1
        assert after["callback_errors"] == before["callback_errors"] + 1
        assert pubsub.closed
        assert pubsub.channels == []

    @pytest.mark.asyncio
    async def test_reconnects_after_connection_error(self):
        broken = FakePubSub([redis.exceptions.ConnectionError("connection reset")])
        fresh = FakePubSub([message("after-reconnect")])
        client = MagicMock()
        client.pubsub.side_effect = [broken, fresh]
        reconnects = get_subscriber_metrics()["reconnects"]

        with patch(
            "ws_gateway.redis_subscriber.calculate_delay_with_jitter", return_value=0
        ):
            received = await collect_until(client, expected_count=1)

        assert received == ["after-reconnect"]
        assert client.pubsub.call_count == 2
        assert broken.closed
        assert fresh.closed
        assert get_subscriber_metrics()["reconnects"] == reconnects + 1

    @pytest.mark.asyncio
    async def test_keeps_retrying_while_redis_stays_down(self):
        broken = FakePubSub([redis.exceptions.ConnectionError("connection reset")])
        still_down = FakePubSub(fail_subscribe=True)
        recovered = FakePubSub([message("back")])
        client = MagicMock()
        client.pubsub.side_effect = [broken, still_down, recovered]

        with patch(
            "ws_gateway.redis_subscriber.calculate_delay_with_jitter", return_value=0
        ):
            received = await collect_until(client, expected_count=1)

        assert received == ["back"]
        assert client.pubsub.call_count == 3
        assert still_down.closed
        assert get_subscriber_metrics()["disconnected_subscriptions"] == 0

    @pytest.mark.asyncio
    async def test_initial_subscribe_failure_is_retried(self):
        first = FakePubSub(fail_subscribe=True)
        second = FakePubSub([message("hello")])
        client = MagicMock()
        client.pubsub.side_effect = [first, second]

        with patch(
            "ws_gateway.redis_subscriber.calculate_delay_with_jitter", return_value=0
        ):
            received = await collect_until(client, expected_count=1)

        assert received == ["hello"]
        assert first.closed

    @pytest.mark.asyncio
    async def test_outage_is_reported_until_resubscribed(self):
        client = MagicMock()
        client.pubsub.side_effect = lambda: FakePubSub(fail_subscribe=True)

        with patch(
            "ws_gateway.redis_subscriber.calculate_delay_with_jitter", return_value=0
        ):
            task = asyncio.create_task(run_subscriber(client, ["presence_updates"], AsyncMock()))
            for _ in range(20):
                await asyncio.sleep(0)

            assert not task.done()
            assert get_subscriber_metrics()["disconnected_subscriptions"] == 1
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert get_subscriber_metrics()["disconnected_subscriptions"] == 0
