"""
ClientAdapter — the single port in relq.

Any object satisfying this structural Protocol can back a Producer. No base
class or registration is required — Python's structural subtyping
(duck typing + Protocol) is sufficient.

Contract
--------
init(options)
  - validates and normalizes the raw options mapping, in order:
      connection, list_name, working_list_name,
      max_number_of_items, pipeline_timeout, config
  - registers the resulting ClientConfig in the ack-ref registry
  - raises ConfigValidationError naming the first offending option

receive_messages(max_items, config)
  - reserves at most max_items items, returns them wrapped as Messages
  - returns fewer (or none) when the store has fewer items or is unreachable
  - never raises on transport failure

ack(ack_ref, successful, failed)
  - removes every successful item from the working list
  - leaves failed items untouched (no requeue)
  - never raises on transport failure
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

from relq.domain.models import ClientConfig, Message


@runtime_checkable
class ClientAdapter(Protocol):
    """
    Minimal interface required by the relq Producer and acknowledger.

    Implementing clients (built-in):
      - RedisListClient    — RPOPLPUSH / LREM pipelines over redis.asyncio
      - InMemoryListClient — asyncio.Lock-based, for testing
    """

    def init(self, options: Mapping[str, Any]) -> ClientConfig:
        """
        Validate raw options and return the normalized configuration.

        Raises
        ------
        ConfigValidationError  if an option is missing or malformed
        """
        ...

    async def receive_messages(
        self,
        max_items: int,
        config: ClientConfig,
    ) -> list[Message]:
        """
        Reserve up to max_items items from config.list_name.

        Returns
        -------
        list[Message] : in reservation order, possibly empty
        """
        ...

    async def ack(
        self,
        ack_ref: str,
        successful: Sequence[Message],
        failed: Sequence[Message],
    ) -> None:
        """
        Remove successfully processed items from the working list.

        Parameters
        ----------
        ack_ref    : token resolving to the ClientConfig that produced the messages
        successful : messages to remove from the working list
        failed     : messages left in the working list for operators to recover
        """
        ...
