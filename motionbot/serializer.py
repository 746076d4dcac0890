from __future__ import annotations

"""FIFO transaction groups and ambient operation identity.

Frame callbacks, bot commands and timers all run on one asyncio loop but
belong to different logical operations. Each operation gets an id stored in a
context variable so log lines can say which flow produced them, and shared
state (cached frame, thresholds, notification timestamps) is guarded by named
transaction groups that admit operations strictly in arrival order.
"""

import asyncio
import logging
import random
import string
from collections import deque
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Deque, Dict, Mapping, Optional, TypeVar

from motionbot.errors import QueueDisciplineError

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPERATION_ID = "operation_id"
OPERATION_LABEL = "operation_label"

_operation_context: ContextVar[Optional[Mapping[str, str]]] = ContextVar("motionbot_operation", default=None)


def current_operation_id() -> Optional[str]:
    """Return the id of the operation running in the current task, if any."""
    context = _operation_context.get()
    if context is None:
        return None
    return context.get(OPERATION_ID)


@dataclass
class QueueEntry:
    """One admitted or waiting transaction in a group queue."""

    transaction_id: str
    release: Optional[Callable[[], None]] = None
    waiter_id: Optional[str] = None


def _admit(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)


class TransactionSerializer:
    """Per-group FIFO async mutex with hierarchical operation ids."""

    def __init__(self, id_length: int = 3) -> None:
        self._groups: Dict[str, Deque[QueueEntry]] = {}
        self._id_length = id_length

    def new_transaction_id(self) -> str:
        """Short random base36 id, enough to tell concurrent flows apart in logs."""
        alphabet = string.ascii_lowercase + string.digits
        return "".join(random.choices(alphabet, k=self._id_length))

    def current_operation_id(self) -> Optional[str]:
        return current_operation_id()

    def queue_snapshot(self, group: str) -> list[str]:
        """Transaction ids queued on `group`, head first."""
        return [entry.transaction_id for entry in self._groups.get(group, ())]

    async def run_operation(self, label: str, body: Callable[[], Awaitable[T]]) -> T:
        """Run `body` as a new root operation with id `label=<random>`."""
        operation_id = f"{label}={self.new_transaction_id()}"
        token = _operation_context.set({OPERATION_ID: operation_id, OPERATION_LABEL: label})
        try:
            return await body()
        finally:
            _operation_context.reset(token)

    def _child_context(self, label: str, separator: str) -> tuple[str, Dict[str, str]]:
        parent_id = current_operation_id()
        if parent_id is None:
            parent_id = self.new_transaction_id()
        context = dict(_operation_context.get() or {})
        context[OPERATION_ID] = f"{parent_id}{separator}{label}"
        return parent_id, context

    async def spawn_child(self, label: str, body: Callable[[], Awaitable[T]], separator: str = "-") -> T:
        """Run `body` under a derived operation id without taking any lock."""
        parent_id, context = self._child_context(label, separator)
        token = _operation_context.set(context)
        try:
            return await body()
        finally:
            _operation_context.reset(token)
            logger.debug("All actions for %s are completed", parent_id)

    async def spawn_generator_child(
        self,
        label: str,
        factory: Callable[[], AsyncIterator[T]],
        separator: str = "-",
    ) -> AsyncIterator[T]:
        """Drive an async generator step by step under a derived operation id.

        The child context is entered around every `__anext__` call and left
        before the value is handed back, so the producer sees the child id at
        each resumption while the consumer keeps its own id between steps.
        """
        logger.debug("Spawning child operation %s", label)
        parent_id, context = self._child_context(label, separator)
        steps = factory()
        try:
            while True:
                token = _operation_context.set(context)
                try:
                    value = await steps.__anext__()
                except StopAsyncIteration:
                    break
                finally:
                    _operation_context.reset(token)
                yield value
        finally:
            token = _operation_context.set(context)
            try:
                await steps.aclose()
            finally:
                _operation_context.reset(token)
            logger.debug("All actions for %s are completed", parent_id)

    async def start_transaction(self, group: str, transaction_id: str) -> bool:
        """Enter `group` as `transaction_id`, waiting behind earlier arrivals.

        Returns True when a queue entry was created (the caller must finish
        it) and False when `transaction_id` already heads the queue.
        """
        queue = self._groups.setdefault(group, deque())
        if not queue:
            logger.debug("Starting new transaction %s in %s", transaction_id, group)
            queue.append(QueueEntry(transaction_id=transaction_id))
            return True

        if queue[0].transaction_id == transaction_id:
            logger.debug("Continuing inside transaction %s", transaction_id)
            return False

        tail = queue[-1]
        logger.info(
            "Created transaction %s on %s but waiting for %s to finish",
            transaction_id,
            group,
            tail.transaction_id,
        )
        admitted = asyncio.get_running_loop().create_future()
        tail.release = lambda: _admit(admitted)
        tail.waiter_id = transaction_id
        # Queue the waiter right away so later arrivals line up behind it.
        entry = QueueEntry(transaction_id=transaction_id)
        queue.append(entry)
        try:
            await admitted
        except BaseException:
            self._abandon(group, entry)
            raise
        logger.debug("Lock released. Starting transaction %s", transaction_id)
        return True

    def _abandon(self, group: str, entry: QueueEntry) -> None:
        """Drop a waiter that was cancelled, handing its successor to its predecessor."""
        queue = self._groups.get(group)
        if not queue:
            return
        index = next((i for i, queued in enumerate(queue) if queued is entry), None)
        if index is None:
            return
        if index == 0:
            # Admitted just before the cancellation landed.
            logger.info("Transaction %s cancelled after admission on %s", entry.transaction_id, group)
            self.finish_transaction(group, entry.transaction_id)
            return
        logger.info("Transaction %s cancelled while waiting on %s", entry.transaction_id, group)
        predecessor = queue[index - 1]
        predecessor.release = entry.release
        predecessor.waiter_id = entry.waiter_id
        del queue[index]

    def finish_transaction(self, group: str, transaction_id: str) -> None:
        """Leave `group`; only the current head may finish."""
        logger.debug("Finishing transaction on %s: %s", group, transaction_id)
        queue = self._groups.get(group)
        if not queue or queue[0].transaction_id != transaction_id:
            head = queue[0].transaction_id if queue else None
            raise QueueDisciplineError(
                f"Invalid queue state on {group}: head is {head}, finishing {transaction_id}"
            )
        entry = queue.popleft()
        if entry.release is not None:
            logger.debug("Releasing %s", entry.waiter_id)
            entry.release()
        if not queue:
            del self._groups[group]

    @asynccontextmanager
    async def transaction(self, group: str) -> AsyncIterator[str]:
        """Hold `group` for the current operation for the duration of the block."""
        transaction_id = current_operation_id() or self.new_transaction_id()
        started = await self.start_transaction(group, transaction_id)
        try:
            yield transaction_id
        finally:
            if started:
                self.finish_transaction(group, transaction_id)
