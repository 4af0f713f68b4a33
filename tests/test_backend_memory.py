"""Tests for InMemoryAdapter."""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from ossuary.backends.inmemory import InMemoryAdapter
from ossuary.core.errors import InvalidArgumentError, QueueNotFoundError
from ossuary.core.message import Envelope
from ossuary.core.params import ReceiveParameters, SendParameters
from ossuary.core.queue import Queue


class InvoiceMessage(Envelope):
    pass


def test_adapter_imports():
    adapter = InMemoryAdapter()
    assert adapter.name == "memory"


# =============================================================================
# Queue management
# =============================================================================


async def test_create_exists_delete_queue(adapter):
    assert await adapter.connect() is True
    assert not await adapter.queue_exists("a")

    assert await adapter.create_queue("a") is True
    assert await adapter.create_queue("a") is False
    assert await adapter.queue_exists("a")
    assert await adapter.get_queue_id("a") == "a"

    assert await adapter.delete_queue("a") is True
    assert await adapter.delete_queue("a") is False
    assert await adapter.get_queue_id("a") is None


async def test_list_queues_in_creation_order(adapter):
    for name in ("queue1", "queue2", "queue3"):
        await adapter.create_queue(name)
    assert await adapter.list_queues() == ["queue1", "queue2", "queue3"]


async def test_delete_queue_removes_messages(adapter):
    queue = Queue("doomed", adapter)
    await queue.ensure_queue()
    await queue.send("a")
    await queue.delete_queue()

    await queue.ensure_queue()
    assert await queue.count() == 0


async def test_operations_on_missing_queue_raise(adapter):
    queue = Queue("missing", adapter)
    with pytest.raises(QueueNotFoundError):
        await adapter.send_message(queue, Envelope(content="x"))
    with pytest.raises(QueueNotFoundError):
        await adapter.receive_messages(queue)
    with pytest.raises(QueueNotFoundError):
        await adapter.count_messages(queue)
    with pytest.raises(QueueNotFoundError):
        await adapter.delete_message(queue, Envelope(content="x"))


def test_options_merge_driver_options():
    adapter = InMemoryAdapter({"driver_options": {"a": 1}, "visibility_timeout": 5})
    adapter.set_options({"driver_options": {"b": 2}})

    assert adapter.options["driver_options"] == {"a": 1, "b": 2}
    # Top-level options are reset to defaults on every set_options call
    assert adapter.visibility_timeout is None


def test_options_must_be_mapping():
    with pytest.raises(InvalidArgumentError):
        InMemoryAdapter(["nope"])
    with pytest.raises(InvalidArgumentError):
        InMemoryAdapter({"driver_options": "nope"})


# =============================================================================
# Send / receive
# =============================================================================


async def test_send_embeds_unclaimed_delivery_record(queue):
    sent = await queue.send(
        Envelope(content="hello", metadata={"foo": "bar"}),
        SendParameters(schedule=0.0),
    )
    record = queue.get_message_info(sent)

    assert record.handle is None
    assert record.message_id
    assert record.queue_name == "queueTest"
    assert record.queue_id == "queueTest"
    assert record.adapter_name == "memory"
    assert record.options == {"schedule": 0.0}
    assert sent.metadata["foo"] == "bar"


async def test_stored_message_is_isolated_from_sender_objects(queue):
    sent = await queue.send(Envelope(content={"amount": 1}, metadata={"tags": ["a"]}))
    sent.content["amount"] = 999
    sent.metadata["tags"].append("b")

    [received] = await queue.receive()
    assert received.content == {"amount": 1}
    assert received.metadata["tags"] == ["a"]


async def test_received_message_is_isolated_from_storage(clock):
    adapter = InMemoryAdapter({"visibility_timeout": 30}, clock=clock)
    queue = Queue("copies", adapter)
    await queue.ensure_queue()
    await queue.send({"content": {"items": [1]}, "metadata": {"seen": 0}})

    [first] = await queue.receive()
    first.content["items"].append(2)
    first.metadata["seen"] = 1

    clock.advance(31)
    [second] = await queue.receive()
    assert second.content == {"items": [1]}
    assert second.metadata["seen"] == 0


async def test_receive_one_message_then_nothing(queue):
    await queue.send({"content": "X"})

    first = await queue.receive(5)
    assert len(first) == 1
    assert first[0].content == "X"
    assert queue.get_message_info(first[0]).handle

    assert await queue.receive(5) == []


async def test_receive_returns_at_most_max_messages(queue):
    for i in range(5):
        await queue.send(i)

    batch = await queue.receive(3)
    assert [m.content for m in batch] == [0, 1, 2]
    assert [m.content for m in await queue.receive(3)] == [3, 4]


async def test_receive_defaults_to_one_message(adapter, queue):
    await queue.send("a")
    await queue.send("b")
    assert len(await adapter.receive_messages(queue)) == 1


@pytest.mark.parametrize("value", [0, -3, "2", 2.0])
async def test_receive_rejects_invalid_max_messages(adapter, queue, value):
    with pytest.raises(InvalidArgumentError):
        await adapter.receive_messages(queue, value)


async def test_receive_rewrites_delivery_record(queue):
    sent = await queue.send({"content": "X", "metadata": {"foo": "bar"}})
    sent_record = queue.get_message_info(sent)

    [received] = await queue.receive()
    received_record = queue.get_message_info(received)

    assert received_record.message_id == sent_record.message_id
    assert received_record.handle is not None
    assert received.metadata == {"foo": "bar", "__queue": received_record}


async def test_resend_strips_previous_record(queue):
    await queue.send("X")
    [received] = await queue.receive()
    old_id = queue.get_message_info(received).message_id

    resent = await queue.send(received)
    record = queue.get_message_info(resent)

    assert record.message_id != old_id
    assert record.handle is None


async def test_reserved_key_is_not_persisted(adapter, queue):
    sent = await queue.send({"content": "X", "metadata": {"app": 1}})
    stored = adapter._data["queueTest"][queue.get_message_info(sent).message_id]
    assert stored.metadata == {"app": 1}


async def test_receive_builds_configured_message_class(adapter):
    queue = Queue("typed", adapter, {"message_class": InvoiceMessage})
    await queue.ensure_queue()
    await queue.send("total: 10")

    [message] = await queue.receive()
    assert isinstance(message, InvoiceMessage)


async def test_class_filter_selects_by_sender_class(queue):
    await queue.send(Envelope(content="plain"))
    await queue.send(InvoiceMessage(content="invoice"))

    params = ReceiveParameters(class_filter=InvoiceMessage.class_path())
    batch = await queue.receive(5, params)

    assert [m.content for m in batch] == ["invoice"]
    assert [m.content for m in await queue.receive(5)] == ["plain"]


# =============================================================================
# Count / delete
# =============================================================================


async def test_count_excludes_claimed_messages(queue):
    for i in range(3):
        await queue.send(i)
    assert await queue.count() == 3

    await queue.receive()
    assert await queue.count() == 2


async def test_delete_received_message(queue):
    await queue.send("X")
    [message] = await queue.receive()

    assert await queue.delete(message) is True
    assert await queue.delete(message) is False


async def test_delete_without_record_returns_false(adapter, queue):
    assert await adapter.delete_message(queue, Envelope(content="X")) is False


async def test_stale_delete_is_rejected(clock):
    adapter = InMemoryAdapter({"visibility_timeout": 30}, clock=clock)
    queue = Queue("stale", adapter)
    await queue.ensure_queue()
    await queue.send("X")

    [first] = await queue.receive()
    clock.advance(31)
    [second] = await queue.receive()

    first_record = queue.get_message_info(first)
    second_record = queue.get_message_info(second)
    assert first_record.message_id == second_record.message_id
    assert first_record.handle != second_record.handle

    assert await queue.delete(first) is False
    assert len(adapter._data["stale"]) == 1
    assert await queue.delete(second) is True
    assert adapter._data["stale"] == {}


async def test_claim_held_until_visibility_timeout(clock):
    adapter = InMemoryAdapter({"visibility_timeout": 30}, clock=clock)
    queue = Queue("vt", adapter)
    await queue.ensure_queue()
    await queue.send("X")

    await queue.receive()
    clock.advance(29)
    assert await queue.receive() == []
    assert await queue.count() == 0

    clock.advance(1)
    assert await queue.count() == 1
    assert len(await queue.receive()) == 1


# =============================================================================
# Scheduling
# =============================================================================


async def test_scheduled_message_withheld_until_due(clock, queue):
    await queue.schedule("later", when=clock.now + 60)

    assert await queue.receive() == []
    assert await queue.count() == 1

    clock.advance(60)
    [message] = await queue.receive()
    assert message.content == "later"


async def test_repeating_message_is_rearmed(clock, queue):
    start = clock.now
    await queue.schedule("tick", when=start + 10, repeating_interval=30)

    clock.advance(10)
    [first] = await queue.receive()
    assert await queue.count() == 1
    assert await queue.receive() == []

    clock.advance(30)
    [second] = await queue.receive()
    first_record = queue.get_message_info(first)
    second_record = queue.get_message_info(second)

    assert second.content == "tick"
    assert second_record.message_id != first_record.message_id
    assert second_record.options == {"schedule": start + 40, "repeating_interval": 30}


async def test_rearm_skips_missed_occurrences(clock, queue):
    start = clock.now
    await queue.schedule("tick", when=start, repeating_interval=10)

    clock.advance(95)
    await queue.receive()

    assert await queue.receive() == []
    clock.advance(5)
    [message] = await queue.receive()
    assert queue.get_message_info(message).options["schedule"] == start + 100


async def test_unschedule_received_occurrence_ends_series(clock, queue):
    await queue.schedule("tick", when=clock.now, repeating_interval=30)
    [received] = await queue.receive()
    assert await queue.count() == 1

    assert await queue.unschedule(received) is True

    assert await queue.count() == 0
    clock.advance(60)
    assert await queue.receive() == []


async def test_unschedule_sent_message_after_delivery_ends_series(clock, adapter, queue):
    sent = await queue.schedule("tick", when=clock.now, repeating_interval=30)
    [received] = await queue.receive()
    assert queue.get_message_info(sent).series_id == queue.get_message_info(received).series_id

    assert await queue.unschedule(sent) is True
    assert await queue.count() == 0

    # The worker still finishes its claimed occurrence
    assert await queue.delete(received) is True
    assert adapter._data["queueTest"] == {}
    clock.advance(60)
    assert await queue.receive() == []


async def test_delete_of_occurrence_keeps_series(clock, queue):
    await queue.schedule("tick", when=clock.now, repeating_interval=30)
    [first] = await queue.receive()
    assert await queue.delete(first) is True

    clock.advance(30)
    [second] = await queue.receive()
    assert second.content == "tick"
    assert await queue.count() == 1


async def test_reclaimed_occurrence_is_not_rearmed_twice(clock):
    adapter = InMemoryAdapter({"visibility_timeout": 30}, clock=clock)
    queue = Queue("repeat", adapter)
    await queue.ensure_queue()
    await queue.schedule("tick", when=clock.now, repeating_interval=3600)

    [first] = await queue.receive()
    clock.advance(31)
    [again] = await queue.receive()

    assert queue.get_message_info(again).message_id == queue.get_message_info(first).message_id
    assert len(adapter._data["repeat"]) == 2
    assert await queue.count() == 1


async def test_non_repeating_message_has_no_series(queue):
    sent = await queue.schedule("once", when=0.0)
    assert queue.get_message_info(sent).series_id is None


# =============================================================================
# Ordering and concurrency
# =============================================================================


@given(count=st.integers(min_value=1, max_value=30))
@settings(max_examples=25, deadline=None)
def test_receive_preserves_insertion_order(count: int):
    """Receiving one at a time returns messages oldest first."""

    async def run():
        queue = Queue("fifo", InMemoryAdapter())
        await queue.ensure_queue()
        for i in range(count):
            await queue.send({"content": {"index": i}})

        received = []
        while batch := await queue.receive():
            received.extend(m.content["index"] for m in batch)
        return received

    assert asyncio.run(run()) == list(range(count))


@given(
    count=st.integers(min_value=0, max_value=60),
    workers=st.integers(min_value=2, max_value=6),
    batch_size=st.integers(min_value=1, max_value=5),
)
@settings(max_examples=15, deadline=None)
def test_concurrent_receivers_never_share_a_message(count: int, workers: int, batch_size: int):
    """Threads draining one backend see every message exactly once."""
    adapter = InMemoryAdapter()
    queue = Queue("race", adapter)

    async def fill():
        await queue.ensure_queue()
        for i in range(count):
            await queue.send(i)

    asyncio.run(fill())

    def drain() -> list[str]:
        async def run():
            seen = []
            while batch := await queue.receive(batch_size):
                seen.extend(queue.get_message_info(m).message_id for m in batch)
            return seen

        return asyncio.run(run())

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda _: drain(), range(workers)))

    received = [message_id for result in results for message_id in result]
    assert len(received) == len(set(received))
    assert len(received) == count


async def test_concurrent_tasks_never_share_a_message(queue):
    for i in range(20):
        await queue.send(i)

    batches = await asyncio.gather(*(queue.receive(4) for _ in range(10)))
    contents = [m.content for batch in batches for m in batch]

    assert sorted(contents) == list(range(20))
