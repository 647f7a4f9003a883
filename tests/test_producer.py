import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError

from relq.adapters.client.memory import InMemoryListClient, InMemoryListStore
from relq.adapters.client.redis import RedisListClient
from relq.core.acknowledger import ack_messages
from relq.core.producer import DEFAULT_RECEIVE_INTERVAL, Producer
from relq.core.registry import AckRefRegistry
from relq.domain.errors import ConfigValidationError, RelqError
from relq.domain.models import ClientConfig, Message

# ---------------------------------------------------------------------------
# Fakes and helpers
# ---------------------------------------------------------------------------


class _FakeClient:
    """Hands out items from a plain list and records every fetch."""

    def __init__(self, items: Sequence[Any] = ()) -> None:
        self.items = [str(i) for i in items]
        self.requests: list[int] = []
        self.received: list[int] = []
        self.acked: list[str] = []
        self.on_request: Callable[[int], None] | None = None

    def init(self, options: Mapping[str, Any]) -> ClientConfig:
        return ClientConfig(
            connection=object(),
            list_name="some_list",
            working_list_name="some_list_processing",
            max_number_of_items=options.get("max_number_of_items", 10),
        )

    def push(self, *items: Any) -> None:
        self.items.extend(str(i) for i in items)

    async def receive_messages(self, max_items: int, config: ClientConfig) -> list[Message]:
        if self.on_request is not None:
            self.on_request(max_items)
        self.requests.append(max_items)
        taken, self.items = self.items[:max_items], self.items[max_items:]
        self.received.append(len(taken))
        return [Message.reserved(item, self, config.ack_ref) for item in taken]

    async def ack(
        self, ack_ref: str, successful: Sequence[Message], failed: Sequence[Message]
    ) -> None:
        self.acked.extend(m.data for m in successful)


class _Sink:
    """Records emitted batches; optionally reacts to each one."""

    def __init__(self, react: Callable[[list[Message]], None] | None = None) -> None:
        self.batches: list[list[Any]] = []
        self.react = react

    async def __call__(self, messages: list[Message]) -> None:
        self.batches.append([m.data for m in messages])
        if self.react is not None:
            self.react(messages)

    @property
    def handled(self) -> list[Any]:
        return [item for batch in self.batches for item in batch]


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def _producer(client, sink=None, interval=timedelta(0), **options) -> Producer:
    return Producer(
        emit=sink or _Sink(),
        options=options,
        client=client,
        receive_interval=interval,
    )


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


async def test_starts_idle_with_zero_demand() -> None:
    async with _producer(_FakeClient()) as producer:
        assert producer.state.demand == 0
        assert producer.state.receive_timer is None
        await asyncio.sleep(0.01)
        assert producer.state.demand == 0
        assert producer.state.receive_timer is None


def test_default_client_and_interval() -> None:
    producer = Producer(
        emit=_Sink(),
        options={
            "connection": MagicMock(spec=Redis),
            "list_name": "foo",
            "working_list_name": "bar",
        },
    )
    assert isinstance(producer.client, RedisListClient)
    assert producer.state.receive_interval == DEFAULT_RECEIVE_INTERVAL
    assert DEFAULT_RECEIVE_INTERVAL == timedelta(milliseconds=5000)
    assert producer.state.config.max_number_of_items == 10


@pytest.mark.parametrize(
    ("overrides", "option", "message"),
    [
        (
            {"connection": None},
            "connection",
            "expected connection to be an instance of Redis, got: None",
        ),
        (
            {"connection": "my_redis_instance"},
            "connection",
            "expected connection to be an instance of Redis, got: 'my_redis_instance'",
        ),
        (
            {"list_name": None},
            "list_name",
            "expected list_name to be a non empty string, got: None",
        ),
        (
            {"list_name": ""},
            "list_name",
            "expected list_name to be a non empty string, got: ''",
        ),
        (
            {"working_list_name": None},
            "working_list_name",
            "expected working_list_name to be a non empty string, got: None",
        ),
        (
            {"working_list_name": ""},
            "working_list_name",
            "expected working_list_name to be a non empty string, got: ''",
        ),
    ],
)
def test_invalid_options_fail_construction(overrides, option, message) -> None:
    options = {
        "connection": MagicMock(spec=Redis),
        "list_name": "foo",
        "working_list_name": "bar",
    }
    options.update(overrides)

    with pytest.raises(ConfigValidationError) as info:
        Producer(
            emit=_Sink(),
            options=options,
            client=RedisListClient(registry=AckRefRegistry()),
        )

    assert info.value.option == option
    assert str(info.value) == message


def test_negative_receive_interval_fails_construction() -> None:
    with pytest.raises(ConfigValidationError) as info:
        _producer(_FakeClient(), interval=timedelta(milliseconds=-1))
    assert info.value.option == "receive_interval"


# ---------------------------------------------------------------------------
# demand()
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("n", [0, -3, True, 1.5, "2"])
async def test_demand_rejects_non_positive_integers(n) -> None:
    async with _producer(_FakeClient()) as producer:
        with pytest.raises(ValueError):
            producer.demand(n)


async def test_demand_after_stop_raises() -> None:
    producer = _producer(_FakeClient())
    async with producer:
        pass
    with pytest.raises(RelqError):
        producer.demand(1)


async def test_start_twice_raises() -> None:
    async with _producer(_FakeClient()) as producer:
        with pytest.raises(RuntimeError):
            await producer.start()


# ---------------------------------------------------------------------------
# Fetch scheduling
# ---------------------------------------------------------------------------


async def test_receive_messages_when_store_has_less_than_demand() -> None:
    client = _FakeClient()
    sink = _Sink()
    async with _producer(client, sink, interval=timedelta(seconds=60)) as producer:
        client.push(1, 2, 3, 4, 5)
        producer.demand(10)

        await _eventually(lambda: len(client.received) == 2)
        await asyncio.sleep(0.02)

        # partial batch retries at once, the empty retry backs off
        assert client.received == [5, 0]
        assert sink.handled == ["1", "2", "3", "4", "5"]
        assert producer.state.demand == 5
        timer = producer.state.receive_timer
        assert timer is not None
        assert timer.when() - asyncio.get_running_loop().time() > 30


async def test_demand_draining_pattern_10_5_5_0() -> None:
    client = _FakeClient(range(1, 21))
    producer: Producer

    def _downstream(messages: list[Message]) -> None:
        producer.demand(5)

    sink = _Sink(react=_downstream)
    producer = _producer(client, sink, interval=timedelta(seconds=60))
    async with producer:
        producer.demand(10)

        await _eventually(lambda: len(client.received) == 4)
        await asyncio.sleep(0.02)

        assert client.received == [10, 5, 5, 0]
        assert sink.handled == [str(i) for i in range(1, 21)]

        # the empty fetch backs off on the long interval instead of retrying
        timer = producer.state.receive_timer
        assert timer is not None
        assert timer.when() - asyncio.get_running_loop().time() > 30
        assert len(client.received) == 4


async def test_immediate_retry_drains_demand_above_batch_size() -> None:
    client = _FakeClient(range(30))
    sink = _Sink()
    async with _producer(client, sink, interval=timedelta(seconds=60)) as producer:
        producer.demand(25)

        await _eventually(lambda: len(sink.handled) == 25)
        await asyncio.sleep(0.02)

        assert client.requests == [10, 10, 5]
        assert producer.state.demand == 0
        assert producer.state.receive_timer is None


async def test_fetch_never_exceeds_demand_or_batch_size() -> None:
    client = _FakeClient(range(100))
    producer = _producer(client, max_number_of_items=7)
    violations: list[tuple[int, int]] = []

    def _check(requested: int) -> None:
        limit = min(producer.state.demand, 7)
        if requested > limit:
            violations.append((requested, limit))

    client.on_request = _check
    async with producer:
        for n in (3, 12, 1, 9, 20):
            producer.demand(n)
            await asyncio.sleep(0.005)
        await _eventually(lambda: sum(client.received) == 45)

    assert violations == []
    assert producer.state.demand == 0


async def test_keeps_polling_empty_store() -> None:
    client = _FakeClient()
    sink = _Sink()
    async with _producer(client, sink, interval=timedelta(milliseconds=10)) as producer:
        client.push(13)
        producer.demand(10)
        await _eventually(lambda: sink.handled == ["13"])
        await _eventually(lambda: client.received[-1] == 0)

        client.push(14, 15)
        await _eventually(lambda: sink.handled == ["13", "14", "15"])
        assert 2 in client.received


async def test_demand_while_timer_pending_only_accumulates() -> None:
    client = _FakeClient()
    async with _producer(client, interval=timedelta(seconds=60)) as producer:
        producer.demand(1)
        await _eventually(lambda: producer.state.receive_timer is not None)

        producer.demand(3)
        await asyncio.sleep(0.02)

        assert client.requests == [1]
        assert producer.state.demand == 4


async def test_timer_fire_fetches_accumulated_demand() -> None:
    client = _FakeClient()
    sink = _Sink()
    async with _producer(client, sink, interval=timedelta(milliseconds=30)) as producer:
        producer.demand(1)
        await _eventually(lambda: producer.state.receive_timer is not None)
        producer.demand(2)
        client.push("a", "b", "c", "d")

        await _eventually(lambda: len(sink.handled) == 3)
        assert client.requests[1] == 3
        assert producer.state.demand == 0


async def test_at_most_one_timer_pending(monkeypatch) -> None:
    client = _FakeClient(range(12))
    producer = _producer(client, interval=timedelta(milliseconds=5))
    scheduled: list[bool] = []
    original = producer._schedule_receive

    def _instrumented(delay: timedelta) -> None:
        pending = producer.state.receive_timer
        scheduled.append(pending is None or pending.cancelled())
        original(delay)

    monkeypatch.setattr(producer, "_schedule_receive", _instrumented)

    async with producer:
        for n in (4, 15, 2, 8):
            producer.demand(n)
            await asyncio.sleep(0.003)
        await _eventually(lambda: len(scheduled) >= 6)
        client.push(*range(20))
        await _eventually(lambda: producer.state.demand == 0)

    assert scheduled
    assert all(scheduled)


async def test_messages_emitted_in_reservation_order() -> None:
    store = InMemoryListStore()
    await store.lpush("jobs", *[f"{i:02d}" for i in range(23)])
    sink = _Sink()
    client = InMemoryListClient(registry=AckRefRegistry())
    producer = Producer(
        emit=sink,
        options={"connection": store, "list_name": "jobs", "working_list_name": "wip"},
        client=client,
        receive_interval=timedelta(seconds=60),
    )
    async with producer:
        producer.demand(23)
        await _eventually(lambda: len(sink.handled) == 23)

    assert sink.handled == [f"{i:02d}" for i in range(23)]


# ---------------------------------------------------------------------------
# End-to-end with acknowledgement
# ---------------------------------------------------------------------------


async def test_handled_messages_are_removed_from_working_list() -> None:
    store = InMemoryListStore()
    await store.lpush("jobs", b"1", b"2", b"3", b"4", b"5")
    handled: list[bytes] = []

    async def _emit(messages: list[Message]) -> None:
        handled.extend(m.data for m in messages)
        ok = [m for m in messages if m.data != b"3"]
        ko = [m for m in messages if m.data == b"3"]
        await ack_messages(ok, ko)

    producer = Producer(
        emit=_emit,
        options={"connection": store, "list_name": "jobs", "working_list_name": "wip"},
        client=InMemoryListClient(registry=AckRefRegistry()),
        receive_interval=timedelta(seconds=60),
    )
    async with producer:
        producer.demand(5)
        await _eventually(lambda: len(handled) == 5)

    assert handled == [b"1", b"2", b"3", b"4", b"5"]
    assert await store.llen("jobs") == 0
    assert await store.lrange("wip") == [b"3"]


async def test_fake_client_receives_acks_through_handles() -> None:
    client = _FakeClient(range(4))

    async def _emit(messages: list[Message]) -> None:
        await ack_messages(messages, [])

    async with _producer(client, _emit) as producer:
        producer.demand(4)
        await _eventually(lambda: len(client.acked) == 4)

    assert client.acked == ["0", "1", "2", "3"]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


async def test_transport_error_on_fetch_backs_off_without_crashing() -> None:
    pipe = MagicMock()
    pipe.execute = AsyncMock(side_effect=RedisConnectionError("connection refused"))
    connection = MagicMock(spec=Redis)
    connection.pipeline.return_value.__aenter__ = AsyncMock(return_value=pipe)
    connection.pipeline.return_value.__aexit__ = AsyncMock(return_value=None)

    sink = _Sink()
    producer = Producer(
        emit=sink,
        options={"connection": connection, "list_name": "a", "working_list_name": "b"},
        client=RedisListClient(registry=AckRefRegistry()),
        receive_interval=timedelta(milliseconds=10),
    )
    async with producer:
        producer.demand(5)
        await _eventually(lambda: pipe.execute.await_count >= 3)

        assert producer._task is not None
        assert not producer._task.done()
        assert sink.batches == []
        assert producer.state.demand == 5


async def test_emit_error_is_raised_from_stop() -> None:
    async def _emit(messages: list[Message]) -> None:
        raise RuntimeError("downstream exploded")

    producer = _producer(_FakeClient(range(3)), _emit)
    await producer.start()
    producer.demand(3)
    await _eventually(lambda: producer._task is not None and producer._task.done())

    with pytest.raises(RuntimeError, match="downstream exploded"):
        await producer.stop()


async def test_demand_after_downstream_failure_raises(caplog) -> None:
    calls: list[int] = []

    async def _emit(messages: list[Message]) -> None:
        calls.append(len(messages))
        raise RuntimeError("downstream exploded")

    producer = _producer(_FakeClient(range(10)), _emit)
    with caplog.at_level(logging.ERROR, logger="relq.core.producer"):
        await producer.start()
        producer.demand(1)
        await _eventually(lambda: producer._task is not None and producer._task.done())

    assert "failed handling a demand event" in caplog.text
    with pytest.raises(RelqError):
        producer.demand(1)
    assert calls == [1]

    with pytest.raises(RuntimeError, match="downstream exploded"):
        await producer.stop()


async def test_stop_cancels_pending_timer() -> None:
    client = _FakeClient()
    producer = _producer(client, interval=timedelta(seconds=60))
    async with producer:
        producer.demand(1)
        await _eventually(lambda: producer.state.receive_timer is not None)
        timer = producer.state.receive_timer

    assert timer is not None and timer.cancelled()
    assert producer.state.receive_timer is None
    assert producer._task is None
