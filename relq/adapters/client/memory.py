"""
InMemoryListClient — asyncio.Lock-based reliable queue for testing and
development.

InMemoryListStore keeps named lists as deques and offers the handful of list
commands the reliable queue pattern needs (LPUSH, RPOPLPUSH, LREM, LLEN,
LRANGE) with the same semantics as Redis. InMemoryListClient drives it exactly
like RedisListClient drives Redis, so producer code can be exercised without a
server:

    store = InMemoryListStore()
    await store.lpush("jobs", b"1", b"2", b"3")

    client = InMemoryListClient()
    config = client.init(
        {"connection": store, "list_name": "jobs", "working_list_name": "jobs:wip"}
    )
    messages = await client.receive_messages(2, config)   # b"1", b"2"

Zero external dependencies. Safe for multiple concurrent coroutines in a
single event loop. NOT safe across processes or threads.
"""
from __future__ import annotations

import asyncio
import collections
import dataclasses
from collections.abc import Mapping, Sequence
from typing import Any

from relq.core.options import validate_options
from relq.core.registry import AckRefRegistry, default_registry
from relq.domain.models import ClientConfig, Message

Item = bytes | str


@dataclasses.dataclass
class InMemoryListStore:
    """
    In-process stand-in for the Redis list commands.

    Lists are stored head-first: lpush() prepends, the tail is the oldest item.
    """

    _lists: dict[str, collections.deque[Item]] = dataclasses.field(
        default_factory=dict, init=False, repr=False
    )
    _lock: asyncio.Lock = dataclasses.field(
        default_factory=asyncio.Lock, init=False, repr=False
    )

    async def lpush(self, name: str, *values: Item) -> int:
        """Prepend values one by one (last value ends up at the head)."""
        async with self._lock:
            target = self._lists.setdefault(name, collections.deque())
            for value in values:
                target.appendleft(value)
            return len(target)

    async def rpoplpush(self, source: str, destination: str) -> Item | None:
        """Atomically move the tail of source to the head of destination."""
        async with self._lock:
            src = self._lists.get(source)
            if not src:
                return None
            value = src.pop()
            self._lists.setdefault(destination, collections.deque()).appendleft(value)
            return value

    async def lrem(self, name: str, count: int, value: Item) -> int:
        """
        Remove occurrences of value.

        count > 0 scans from the head, count < 0 from the tail, removing at
        most abs(count) occurrences; count == 0 removes all of them.
        """
        async with self._lock:
            target = self._lists.get(name)
            if not target:
                return 0
            items = list(target)
            indexes = range(len(items)) if count >= 0 else range(len(items) - 1, -1, -1)
            limit = abs(count) or len(items)
            doomed: set[int] = set()
            for i in indexes:
                if items[i] == value:
                    doomed.add(i)
                    if len(doomed) == limit:
                        break
            self._lists[name] = collections.deque(
                item for i, item in enumerate(items) if i not in doomed
            )
            return len(doomed)

    async def llen(self, name: str) -> int:
        async with self._lock:
            return len(self._lists.get(name, ()))

    async def lrange(self, name: str) -> list[Item]:
        """The whole list, head first."""
        async with self._lock:
            return list(self._lists.get(name, ()))


@dataclasses.dataclass
class InMemoryListClient:
    """
    ClientAdapter over an InMemoryListStore.

    Accepts the same options as RedisListClient, with an InMemoryListStore as
    the connection.
    """

    registry: AckRefRegistry = dataclasses.field(
        default_factory=lambda: default_registry
    )

    def init(self, options: Mapping[str, Any]) -> ClientConfig:
        config = validate_options(options, InMemoryListStore)
        self.registry.put(config)
        return config

    async def receive_messages(
        self,
        max_items: int,
        config: ClientConfig,
    ) -> list[Message]:
        store: InMemoryListStore = config.connection
        messages: list[Message] = []
        for _ in range(min(max_items, config.max_number_of_items)):
            item = await store.rpoplpush(config.list_name, config.working_list_name)
            if item is not None:
                messages.append(Message.reserved(item, self, config.ack_ref))
        return messages

    async def ack(
        self,
        ack_ref: str,
        successful: Sequence[Message],
        failed: Sequence[Message],
    ) -> None:
        if not successful:
            return
        config = self.registry.get(ack_ref)
        store: InMemoryListStore = config.connection
        for message in successful:
            await store.lrem(config.working_list_name, -1, message.receipt.id)
