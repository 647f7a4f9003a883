"""
Domain models for relq — backed by Pydantic v2.

Pydantic handles:
  - field validation and type coercion for the validated client config
  - immutability (every model is frozen)

ClientConfig is built by a client's init() once the raw options passed the
checks in relq.core.options; Message and its AckHandle are built by a client
for every item it reserves.
"""

import uuid
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_MAX_NUMBER_OF_ITEMS: int = 10
MAX_NUMBER_OF_ITEMS_ALLOWED: int = 20
DEFAULT_PIPELINE_TIMEOUT: timedelta = timedelta(seconds=10)


class ClientConfig(BaseModel):
    """
    Validated, immutable configuration of a client.

    connection          — opaque handle to a pre-established store connection
    list_name           — source list items are reserved from
    working_list_name   — list holding reserved but unacknowledged items
    max_number_of_items — upper bound on items reserved per round trip (1-20)
    pipeline_timeout    — bound on every pipelined round trip
    config              — free-form extension options for custom clients
    ack_ref             — token under which this config is registered
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    connection: Any
    list_name: str = Field(min_length=1)
    working_list_name: str = Field(min_length=1)
    max_number_of_items: int = Field(
        default=DEFAULT_MAX_NUMBER_OF_ITEMS, ge=1, le=MAX_NUMBER_OF_ITEMS_ALLOWED
    )
    pipeline_timeout: timedelta = DEFAULT_PIPELINE_TIMEOUT
    config: Mapping[str, Any] = Field(default_factory=dict)
    ack_ref: str = Field(default_factory=lambda: uuid.uuid4().hex)

    @field_validator("pipeline_timeout")
    @classmethod
    def _positive_timeout(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("pipeline_timeout must be positive")
        return v


class Receipt(BaseModel):
    """
    What a client needs to later remove a reserved item.

    id     — for list based clients, the item value itself
    handle — optional extra token for clients that have one
    """

    model_config = ConfigDict(frozen=True)

    id: bytes | str
    handle: str | None = None


class AckHandle(BaseModel):
    """
    Acknowledgement handle attached to every produced message.

    client   — the client that produced the message (and will ack it)
    ack_ref  — registry token resolving to the producing ClientConfig
    ack_data — the receipt of this particular item
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    client: Any
    ack_ref: str
    ack_data: Receipt


class Message(BaseModel):
    """A reserved item on its way downstream."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    data: bytes | str
    acknowledger: AckHandle

    @classmethod
    def reserved(cls, data: bytes | str, client: Any, ack_ref: str) -> "Message":
        """Factory — wraps a reserved list item; the item is its own receipt."""
        return cls(
            data=data,
            acknowledger=AckHandle(
                client=client, ack_ref=ack_ref, ack_data=Receipt(id=data)
            ),
        )

    @property
    def receipt(self) -> Receipt:
        return self.acknowledger.ack_data
