"""
Acknowledger — routes finished batches back to the client that produced them.

The downstream pipeline calls ack_messages() once a batch has been processed.
Messages are grouped by their (client, ack_ref) handle and each group is
handed to client.ack() in a single call, preserving the original order within
the group:

    await ack_messages(successful=[m1, m2, m3], failed=[m4])
      → client_a.ack(ref_a, [m1, m3], [m4])
      → client_b.ack(ref_b, [m2], [])

Every group is dispatched even if an earlier client.ack() raises (for
example AckRefNotFoundError). Failures are logged as they happen and the
first one is re-raised once all groups have been handed over.

Clients then split the successful messages with chunked() to respect the
store's pipeline size limit.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable, Iterator, Sequence
from typing import Any, TypeVar

from relq.domain.models import Message

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ITEMS_PER_PIPELINE: int = 20


@dataclasses.dataclass
class _AckGroup:
    """Messages sharing one (client, ack_ref) handle."""

    client: Any
    ack_ref: str
    successful: list[Message] = dataclasses.field(default_factory=list)
    failed: list[Message] = dataclasses.field(default_factory=list)


async def ack_messages(
    successful: Sequence[Message],
    failed: Sequence[Message],
) -> None:
    """Dispatch a batch outcome to every client referenced by its messages."""
    groups: dict[tuple[int, str], _AckGroup] = {}

    def _group(message: Message) -> _AckGroup:
        handle = message.acknowledger
        key = (id(handle.client), handle.ack_ref)
        if key not in groups:
            groups[key] = _AckGroup(client=handle.client, ack_ref=handle.ack_ref)
        return groups[key]

    for message in successful:
        _group(message).successful.append(message)
    for message in failed:
        _group(message).failed.append(message)

    errors: list[Exception] = []
    for group in groups.values():
        logger.debug(
            "Acknowledging %d successful and %d failed message(s) for ack_ref %s",
            len(group.successful),
            len(group.failed),
            group.ack_ref,
        )
        try:
            await group.client.ack(group.ack_ref, group.successful, group.failed)
        except Exception as exc:
            logger.exception("Acknowledgement failed for ack_ref %s", group.ack_ref)
            errors.append(exc)

    if errors:
        raise errors[0]


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive lists of at most `size` items."""
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")
    chunk: list[T] = []
    for item in items:
        chunk.append(item)
        if len(chunk) == size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk
