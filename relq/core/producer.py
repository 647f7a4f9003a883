"""
Producer — demand-driven scheduler pulling messages through a ClientAdapter.

The downstream pipeline declares how many messages it can take with
demand(n) and receives them through the async `emit` callable. The producer
never fetches more than has been asked for.

Event model
-----------
All state changes happen on one actor task that drains an inbox of two event
kinds, strictly one at a time:

  demand(n)   ──> [DEMAND n] ─┐
  timer fires ──> [TIMER]    ─┴─> actor: update state → maybe _attempt_fetch()

_attempt_fetch() asks the client for min(demand, max_number_of_items)
messages, emits them, subtracts them from demand and then:

  no messages returned        → retry after receive_interval (store looks empty)
  demand fully satisfied      → no timer, idle until the next demand(n)
  messages returned, demand>0 → retry on a zero-delay timer

Timers are scheduled only from _attempt_fetch(), and _attempt_fetch() only
runs while no timer is pending, so at most one timer exists at any time.

Usage
-----
    async def emit(messages):
        for message in messages:
            await pipeline.put(message)

    async with Producer(
        emit=emit,
        options={
            "connection": redis_client,
            "list_name": "jobs",
            "working_list_name": "jobs:processing",
        },
    ) as producer:
        producer.demand(10)
        ...
"""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import timedelta
from types import TracebackType
from typing import Any

from relq.adapters.client.redis import RedisListClient
from relq.core.options import validate_receive_interval
from relq.domain.errors import RelqError
from relq.domain.models import ClientConfig, Message
from relq.ports.client import ClientAdapter

logger = logging.getLogger(__name__)

DEFAULT_RECEIVE_INTERVAL: timedelta = timedelta(milliseconds=5000)

Emitter = Callable[[list[Message]], Awaitable[None]]


class _EventKind(enum.Enum):
    DEMAND = "demand"
    TIMER = "timer"


@dataclasses.dataclass(frozen=True)
class _Event:
    kind: _EventKind
    amount: int = 0


@dataclasses.dataclass
class ProducerState:
    """
    Everything the scheduler mutates. Owned by a single Producer.

    demand           — outstanding demand, never negative
    receive_timer    — the pending retry timer, if any
    receive_interval — back-off delay after an empty fetch
    client / config  — the configured client and its validated config
    """

    client: ClientAdapter
    config: ClientConfig
    receive_interval: timedelta
    demand: int = 0
    receive_timer: asyncio.TimerHandle | None = None


@dataclasses.dataclass
class Producer:
    """
    Pull-based producer over any ClientAdapter.

    Parameters
    ----------
    emit             : awaited with every non-empty batch of messages, in
                       reservation order
    options          : raw options forwarded to client.init()
    client           : ClientAdapter implementation (default RedisListClient)
    receive_interval : delay before retrying after an empty fetch (default 5s)

    Raises
    ------
    ConfigValidationError  at construction, if the client rejects options or
                           receive_interval is negative
    """

    emit: Emitter
    options: Mapping[str, Any]
    client: ClientAdapter = dataclasses.field(default_factory=RedisListClient)
    receive_interval: timedelta = DEFAULT_RECEIVE_INTERVAL

    state: ProducerState = dataclasses.field(init=False, repr=False)
    _pending: list[_Event] = dataclasses.field(
        default_factory=list, init=False, repr=False
    )
    _wakeup: asyncio.Event = dataclasses.field(
        default_factory=asyncio.Event, init=False, repr=False
    )
    _task: asyncio.Task[None] | None = dataclasses.field(
        default=None, init=False, repr=False
    )
    _stopped: bool = dataclasses.field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        receive_interval = validate_receive_interval(self.receive_interval)
        config = self.client.init(self.options)
        self.state = ProducerState(
            client=self.client,
            config=config,
            receive_interval=receive_interval,
        )

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Start the actor task."""
        if self._task is not None:
            raise RuntimeError("Producer is already running")
        if self._stopped:
            raise RelqError("Producer is stopped")
        self._task = asyncio.create_task(
            self._run(), name=f"relq-producer-{self.state.config.list_name}"
        )
        logger.info(
            "Producer started for list %r (working list %r)",
            self.state.config.list_name,
            self.state.config.working_list_name,
        )

    async def stop(self) -> None:
        """
        Cancel the pending timer and stop the actor.

        Events still in the inbox are discarded. An exception raised by
        `emit` while the producer was running is re-raised here.
        """
        self._stopped = True
        self._cancel_timer()
        self._pending.clear()
        self._wakeup.set()
        if self._task is not None:
            task, self._task = self._task, None
            try:
                await task
            finally:
                logger.info(
                    "Producer stopped for list %r with %d unmet demand",
                    self.state.config.list_name,
                    self.state.demand,
                )

    async def __aenter__(self) -> "Producer":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()

    # ------------------------------------------------------------------ #
    # Events                                                               #
    # ------------------------------------------------------------------ #

    def demand(self, n: int) -> None:
        """Declare that downstream can take `n` more messages."""
        if isinstance(n, bool) or not isinstance(n, int) or n < 1:
            raise ValueError(f"demand must be a positive integer, got {n!r}")
        self._post(_Event(_EventKind.DEMAND, n))

    def _on_timer(self) -> None:
        if not self._stopped and not self._actor_failed():
            self._post(_Event(_EventKind.TIMER))

    def _post(self, event: _Event) -> None:
        if self._stopped:
            raise RelqError("Producer is stopped")
        if self._actor_failed():
            raise RelqError("Producer is no longer running, call stop() to see why")
        self._pending.append(event)
        self._wakeup.set()

    # ------------------------------------------------------------------ #
    # Actor                                                                #
    # ------------------------------------------------------------------ #

    async def _run(self) -> None:
        """Background coroutine — handles events one at a time until stopped."""
        while not self._stopped:
            if not self._pending:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            event = self._pending.pop(0)
            try:
                if event.kind is _EventKind.DEMAND:
                    await self._handle_demand(event.amount)
                else:
                    await self._handle_timer()
            except Exception:
                logger.exception(
                    "Producer for list %r failed handling a %s event",
                    self.state.config.list_name,
                    event.kind.value,
                )
                raise

    def _actor_failed(self) -> bool:
        return self._task is not None and self._task.done()

    async def _handle_demand(self, amount: int) -> None:
        self.state.demand += amount
        if self.state.receive_timer is None:
            await self._attempt_fetch()

    async def _handle_timer(self) -> None:
        self.state.receive_timer = None
        await self._attempt_fetch()

    async def _attempt_fetch(self) -> None:
        state = self.state
        batch = min(state.demand, state.config.max_number_of_items)
        if batch == 0:
            return

        messages = await state.client.receive_messages(batch, state.config)
        # Reserved items are already in the working list; hand them over even
        # if stop() was called meanwhile.
        if messages:
            await self.emit(messages)
        state.demand = max(state.demand - len(messages), 0)

        logger.debug(
            "Fetched %d of %d requested message(s) from %r, %d demand left",
            len(messages),
            batch,
            state.config.list_name,
            state.demand,
        )

        if self._stopped:
            return
        if not messages:
            self._schedule_receive(state.receive_interval)
        elif state.demand > 0:
            self._schedule_receive(timedelta(0))

    def _schedule_receive(self, delay: timedelta) -> None:
        loop = asyncio.get_running_loop()
        self.state.receive_timer = loop.call_later(
            delay.total_seconds(), self._on_timer
        )

    def _cancel_timer(self) -> None:
        if self.state.receive_timer is not None:
            self.state.receive_timer.cancel()
            self.state.receive_timer = None
