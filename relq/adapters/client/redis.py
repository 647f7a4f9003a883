"""
RedisListClient — the default client, using redis.asyncio pipelines.

Implements the Redis "reliable queue" pattern:
  https://redis.io/commands/rpoplpush#pattern-reliable-queue

Reserve
-------
receive_messages(n) queues n independent RPOPLPUSH commands
(tail of list_name → head of working_list_name) on a non-transactional
pipeline and sends them in one round trip. Each RPOPLPUSH is atomic on its
own; a nil reply means the source ran dry partway through the batch and is
dropped, so fewer than n messages may come back.

Release
-------
ack() removes successful items from the working list with
LREM working_list_name -1 <item>, chunked at MAX_ITEMS_PER_PIPELINE commands
per round trip. Failed items stay in the working list.

Failures
--------
Every round trip is bounded by config.pipeline_timeout. Redis errors,
socket errors and timeouts are wrapped in TransportError, logged as a
warning and absorbed: a failed fetch returns [] (the producer backs off), a
failed ack chunk is skipped and the remaining chunks are still sent. Which
items of a failed ack chunk were actually removed is unknown.

Limitations
-----------
LREM removes *one* occurrence of the value. If two reserved items carry the
same payload, acknowledging one may remove the other's entry instead.
Items stranded in the working list by a crash are not reclaimed.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.exceptions import RedisError

from relq.core.acknowledger import MAX_ITEMS_PER_PIPELINE, chunked
from relq.core.options import validate_options
from relq.core.registry import AckRefRegistry, default_registry
from relq.domain.errors import TransportError
from relq.domain.models import ClientConfig, Message

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class RedisListClient:
    """
    Redis list client.

    Parameters
    ----------
    registry : where init() registers configs for later ack lookups
               (defaults to the process-wide registry)

    Options accepted by init()
    --------------------------
    connection          : redis.asyncio.Redis (required, managed by the caller)
    list_name           : source list (required)
    working_list_name   : working list (required)
    max_number_of_items : items reserved per round trip, 1-20 (default 10)
    pipeline_timeout    : timedelta bounding each round trip (default 10s)
    config              : extension mapping (default {})
    """

    registry: AckRefRegistry = dataclasses.field(
        default_factory=lambda: default_registry
    )

    def init(self, options: Mapping[str, Any]) -> ClientConfig:
        """Validate options and register the resulting config."""
        config = validate_options(options, Redis)
        self.registry.put(config)
        return config

    async def receive_messages(
        self,
        max_items: int,
        config: ClientConfig,
    ) -> list[Message]:
        """Reserve up to max_items items in a single pipelined round trip."""
        count = min(max_items, config.max_number_of_items)
        if count < 1:
            return []

        def _reserve(pipe: Pipeline) -> None:
            for _ in range(count):
                pipe.rpoplpush(config.list_name, config.working_list_name)

        try:
            replies = await _run_pipeline(config, _reserve)
        except TransportError as exc:
            logger.warning(
                "Error popping items from Redis list %r: %s", config.list_name, exc
            )
            return []

        items = [item for item in replies if item is not None]
        logger.debug(
            "Reserved %d of %d requested item(s) from %r into %r",
            len(items),
            count,
            config.list_name,
            config.working_list_name,
        )
        return [Message.reserved(item, self, config.ack_ref) for item in items]

    async def ack(
        self,
        ack_ref: str,
        successful: Sequence[Message],
        failed: Sequence[Message],
    ) -> None:
        """Remove successful items from the working list, one pipeline per chunk."""
        if not successful:
            return
        config = self.registry.get(ack_ref)

        for chunk in chunked(successful, MAX_ITEMS_PER_PIPELINE):
            receipts = [message.receipt.id for message in chunk]

            def _release(pipe: Pipeline, receipts: list[bytes | str] = receipts) -> None:
                for receipt in receipts:
                    pipe.lrem(config.working_list_name, -1, receipt)

            try:
                removed = await _run_pipeline(config, _release)
            except TransportError as exc:
                logger.warning(
                    "Error acknowledging %d item(s) in Redis working list %r: %s",
                    len(receipts),
                    config.working_list_name,
                    exc,
                )
                continue

            logger.debug(
                "Removed %d of %d item(s) from %r",
                sum(int(n) for n in removed if n),
                len(receipts),
                config.working_list_name,
            )


async def _run_pipeline(
    config: ClientConfig,
    queue_commands: Callable[[Pipeline], None],
) -> list[Any]:
    """Send queued commands in one round trip. Raises TransportError on failure."""
    connection: Redis = config.connection
    try:
        async with connection.pipeline(transaction=False) as pipe:
            queue_commands(pipe)
            return await asyncio.wait_for(
                pipe.execute(), config.pipeline_timeout.total_seconds()
            )
    except (RedisError, OSError) as exc:
        raise TransportError("Redis pipeline failed", exc) from exc
