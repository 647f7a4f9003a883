"""
relq — reliable-queue message producer for Redis lists.

Implements the Redis "reliable queue" pattern:
  https://redis.io/commands/rpoplpush#pattern-reliable-queue

Items are reserved by atomically moving them from the tail of a source list
to the head of a working list (RPOPLPUSH), handed downstream, and removed from
the working list (LREM) once downstream reports them processed. Items whose
processing failed, or whose worker crashed, stay in the working list until an
operator recovers them — there is no automatic reclaim.

A Producer only fetches what downstream has asked for: demand(n) accumulates
demand, each fetch reserves at most min(demand, max_number_of_items) items in
one pipelined round trip, and an empty store is polled every
receive_interval.

Quick start
-----------
    import asyncio
    from redis.asyncio import Redis
    from relq import Producer, ack_messages

    async def main():
        redis = Redis()

        async def emit(messages):
            for message in messages:
                print(message.data)
            await ack_messages(successful=messages, failed=[])

        async with Producer(
            emit=emit,
            options={
                "connection": redis,
                "list_name": "jobs",
                "working_list_name": "jobs:processing",
            },
        ) as producer:
            producer.demand(10)
            await asyncio.sleep(1)

    asyncio.run(main())

Clients
-------
Built-in clients:
  - RedisListClient      — default, redis.asyncio pipelines
  - InMemoryListClient   — for tests and examples (no server)

Custom clients only need to implement the three-method ClientAdapter port:
  def init(options) -> ClientConfig
  async def receive_messages(max_items, config) -> list[Message]
  async def ack(ack_ref, successful, failed) -> None

Architecture
------------
Follows the Ports & Adapters pattern:
  domain/   — pure value types (ClientConfig, Message, AckHandle, Receipt)
  ports/    — Protocol interfaces (ClientAdapter)
  core/     — business logic (Producer, acknowledger, registry, options)
  adapters/ — concrete client implementations
"""
from __future__ import annotations

from relq.adapters.client.memory import InMemoryListClient, InMemoryListStore
from relq.adapters.client.redis import RedisListClient
from relq.core.acknowledger import MAX_ITEMS_PER_PIPELINE, ack_messages, chunked
from relq.core.producer import DEFAULT_RECEIVE_INTERVAL, Producer, ProducerState
from relq.core.registry import AckRefRegistry, default_registry
from relq.domain.errors import (
    AckRefNotFoundError,
    ConfigValidationError,
    RelqError,
    TransportError,
)
from relq.domain.models import AckHandle, ClientConfig, Message, Receipt
from relq.ports.client import ClientAdapter

__all__ = [
    # Domain models
    "AckHandle",
    "ClientConfig",
    "Message",
    "Receipt",
    # Errors
    "RelqError",
    "ConfigValidationError",
    "TransportError",
    "AckRefNotFoundError",
    # Port (for typing custom clients)
    "ClientAdapter",
    # Producer and acknowledgement
    "Producer",
    "ProducerState",
    "DEFAULT_RECEIVE_INTERVAL",
    "ack_messages",
    "chunked",
    "MAX_ITEMS_PER_PIPELINE",
    # Ack-ref registry
    "AckRefRegistry",
    "default_registry",
    # Built-in clients
    "RedisListClient",
    "InMemoryListClient",
    "InMemoryListStore",
]
