"""
Tests for FIFO transaction groups and operation identity.
"""

import asyncio
import re

import pytest

from motionbot.errors import QueueDisciplineError
from motionbot.serializer import TransactionSerializer, current_operation_id


class TestStartFinish:
    """Queue admission and release."""

    def test_empty_group_admits_immediately(self):
        serializer = TransactionSerializer()

        async def scenario():
            started = await serializer.start_transaction("g", "a")
            return started, serializer.queue_snapshot("g")

        started, queue = asyncio.run(scenario())

        assert started is True
        assert queue == ["a"]

    def test_same_id_at_head_is_reentrant(self):
        serializer = TransactionSerializer()

        async def scenario():
            await serializer.start_transaction("g", "a")
            again = await serializer.start_transaction("g", "a")
            return again, serializer.queue_snapshot("g")

        again, queue = asyncio.run(scenario())

        assert again is False
        assert queue == ["a"]

    def test_waiters_are_admitted_in_arrival_order(self):
        serializer = TransactionSerializer()
        order = []

        async def worker(transaction_id):
            await serializer.start_transaction("g", transaction_id)
            order.append(transaction_id)
            await asyncio.sleep(0)
            serializer.finish_transaction("g", transaction_id)

        async def scenario():
            await serializer.start_transaction("g", "a")
            tasks = [asyncio.create_task(worker(tid)) for tid in ("b", "c", "d")]
            await asyncio.sleep(0)
            queued = serializer.queue_snapshot("g")
            ran_before_release = list(order)
            serializer.finish_transaction("g", "a")
            await asyncio.gather(*tasks)
            return queued, ran_before_release

        queued, ran_before_release = asyncio.run(scenario())

        assert queued == ["a", "b", "c", "d"]
        assert ran_before_release == []
        assert order == ["b", "c", "d"]
        assert serializer.queue_snapshot("g") == []

    def test_finishing_non_head_raises(self):
        serializer = TransactionSerializer()

        async def scenario():
            await serializer.start_transaction("g", "a")
            waiter = asyncio.create_task(serializer.start_transaction("g", "b"))
            await asyncio.sleep(0)
            try:
                serializer.finish_transaction("g", "b")
            finally:
                serializer.finish_transaction("g", "a")
                await waiter

        with pytest.raises(QueueDisciplineError):
            asyncio.run(scenario())

    def test_finishing_unknown_group_raises(self):
        serializer = TransactionSerializer()

        with pytest.raises(QueueDisciplineError):
            serializer.finish_transaction("missing", "a")

    def test_groups_do_not_block_each_other(self):
        serializer = TransactionSerializer()

        async def scenario():
            await serializer.start_transaction("frame-cache", "a")
            return await asyncio.wait_for(serializer.start_transaction("threshold", "b"), timeout=1)

        assert asyncio.run(scenario()) is True

    def test_cancelled_waiter_leaves_the_queue(self):
        serializer = TransactionSerializer()

        async def hold():
            async with serializer.transaction("g"):
                await asyncio.sleep(10)

        async def scenario():
            await serializer.start_transaction("g", "a")
            waiter = asyncio.create_task(serializer.run_operation("w", hold))
            await asyncio.sleep(0)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
            after_cancel = serializer.queue_snapshot("g")
            serializer.finish_transaction("g", "a")
            started = await asyncio.wait_for(serializer.start_transaction("g", "c"), timeout=0.5)
            return after_cancel, started

        after_cancel, started = asyncio.run(scenario())

        assert after_cancel == ["a"]
        assert started is True

    def test_cancelled_middle_waiter_hands_over_to_next(self):
        serializer = TransactionSerializer()

        async def scenario():
            await serializer.start_transaction("g", "a")
            middle = asyncio.create_task(serializer.start_transaction("g", "b"))
            last = asyncio.create_task(serializer.start_transaction("g", "c"))
            await asyncio.sleep(0)
            middle.cancel()
            with pytest.raises(asyncio.CancelledError):
                await middle
            serializer.finish_transaction("g", "a")
            started = await asyncio.wait_for(last, timeout=0.5)
            return started, serializer.queue_snapshot("g")

        started, queue = asyncio.run(scenario())

        assert started is True
        assert queue == ["c"]

    def test_cancel_after_admission_releases_group(self):
        serializer = TransactionSerializer()

        async def scenario():
            await serializer.start_transaction("g", "a")
            waiter = asyncio.create_task(serializer.start_transaction("g", "b"))
            await asyncio.sleep(0)
            serializer.finish_transaction("g", "a")
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
            return serializer.queue_snapshot("g")

        assert asyncio.run(scenario()) == []


class TestTransactionContext:
    """The `transaction()` helper used by the pipeline."""

    def test_nested_blocks_in_one_operation_do_not_deadlock(self):
        serializer = TransactionSerializer()

        async def body():
            async with serializer.transaction("g"):
                async with serializer.transaction("g"):
                    inner = serializer.queue_snapshot("g")
                after_inner = serializer.queue_snapshot("g")
            return inner, after_inner

        inner, after_inner = asyncio.run(serializer.run_operation("op", body))

        assert len(inner) == 1
        assert after_inner == inner
        assert serializer.queue_snapshot("g") == []

    def test_block_releases_group_on_error(self):
        serializer = TransactionSerializer()

        async def body():
            async with serializer.transaction("g"):
                raise RuntimeError("boom")

        async def scenario():
            with pytest.raises(RuntimeError):
                await serializer.run_operation("op", body)
            return serializer.queue_snapshot("g")

        assert asyncio.run(scenario()) == []


class TestOperationIdentity:
    """Ambient operation ids and child scopes."""

    def test_root_operation_id_format(self):
        serializer = TransactionSerializer()

        async def body():
            return current_operation_id()

        operation_id = asyncio.run(serializer.run_operation("frame", body))

        assert re.fullmatch(r"frame=[a-z0-9]{3}", operation_id)
        assert current_operation_id() is None

    def test_spawn_child_extends_parent_id(self):
        serializer = TransactionSerializer()

        async def child():
            await asyncio.sleep(0)
            return current_operation_id()

        async def body():
            parent = current_operation_id()
            child_id = await serializer.spawn_child("send", child)
            dotted = await serializer.spawn_child("x", child, separator=".")
            return parent, child_id, dotted, current_operation_id()

        parent, child_id, dotted, after = asyncio.run(serializer.run_operation("op", body))

        assert child_id == f"{parent}-send"
        assert dotted == f"{parent}.x"
        assert after == parent

    def test_generator_child_keeps_context_across_steps(self):
        serializer = TransactionSerializer()

        async def producer():
            for step in range(3):
                await asyncio.sleep(0)
                yield step, current_operation_id()

        async def body():
            parent = current_operation_id()
            seen, between = [], []
            async for _step, operation_id in serializer.spawn_generator_child("gen", producer):
                seen.append(operation_id)
                await asyncio.sleep(0)
                between.append(current_operation_id())
            return parent, seen, between

        parent, seen, between = asyncio.run(serializer.run_operation("op", body))

        assert seen == [f"{parent}-gen"] * 3
        assert between == [parent] * 3

    def test_concurrent_operations_keep_their_own_ids(self):
        serializer = TransactionSerializer()

        async def body():
            before = current_operation_id()
            await asyncio.sleep(0.01)
            return before, current_operation_id()

        async def scenario():
            return await asyncio.gather(
                serializer.run_operation("one", body),
                serializer.run_operation("two", body),
            )

        (one_before, one_after), (two_before, two_after) = asyncio.run(scenario())

        assert one_before == one_after and one_before.startswith("one=")
        assert two_before == two_after and two_before.startswith("two=")
