from __future__ import annotations

import asyncio

import pytest

from complaintdesk.delivery import SubscriptionState
from complaintdesk.models import Message
from complaintdesk.storage import MESSAGES_TABLE


def test_two_subscribers_each_receive_once_in_order(coordinator, message_store, feed) -> None:
    first, second = [], []
    sub_a = coordinator.subscribe("c1", first.append)
    sub_b = coordinator.subscribe("c1", second.append)

    assert feed.registration_count(MESSAGES_TABLE) == 1

    message_store.append("c1", "student-1", "one")
    message_store.append("c1", "reviewer-1", "two")

    assert [item.content for item in first] == ["one", "two"]
    assert [item.content for item in second] == ["one", "two"]
    sub_a.close()
    sub_b.close()


def test_registration_released_with_last_subscription(coordinator, feed) -> None:
    sub_a = coordinator.subscribe("c1")
    sub_b = coordinator.subscribe("c1")
    coordinator.subscribe("c2").close()

    sub_a.close()
    assert coordinator.is_registered("c1")
    sub_b.close()
    sub_b.close()

    assert not coordinator.is_registered("c1")
    assert feed.registration_count() == 0
    assert coordinator.presence("c1") == 0


def test_messages_for_other_complaints_are_not_delivered(coordinator, message_store) -> None:
    received = []
    subscription = coordinator.subscribe("c1", received.append)
    message_store.append("c2", "student-1", "elsewhere")
    assert received == []
    subscription.close()


def test_closed_subscription_receives_nothing(coordinator, message_store) -> None:
    received = []
    subscription = coordinator.subscribe("c1", received.append)
    subscription.close()
    message_store.append("c1", "student-1", "too late")
    assert received == []
    assert subscription.state is SubscriptionState.CLOSED


def test_failing_callback_does_not_block_others(coordinator, message_store) -> None:
    received = []

    def explode(message: Message) -> None:
        raise RuntimeError("boom")

    bad = coordinator.subscribe("c1", explode)
    good = coordinator.subscribe("c1", received.append)
    message_store.append("c1", "student-1", "still delivered")

    assert [item.content for item in received] == ["still delivered"]
    bad.close()
    good.close()


def test_duplicates_dropped_by_id_and_watermark(coordinator, message_store) -> None:
    subscription = coordinator.subscribe("c1")
    message = message_store.append("c1", "student-1", "hello")

    assert subscription.deliver(message) is False
    stale = Message(
        id="other-id",
        complaint_id="c1",
        sender_id="student-1",
        content="old",
        created_at=message.created_at,
        seq=message.seq,
    )
    assert subscription.deliver(stale) is False
    assert [item.id for item in subscription.drain()] == [message.id]
    assert subscription.duplicate_count == 2
    assert subscription.drain() == []
    subscription.close()


def test_buffer_keeps_newest_when_full(coordinator, message_store) -> None:
    subscription = coordinator.subscribe("c1")
    for index in range(20):
        message_store.append("c1", "student-1", f"m{index}")

    drained = subscription.drain()

    assert len(drained) == 16
    assert drained[-1].content == "m19"
    subscription.close()


def test_connection_lost_then_resubscribe_replays_missed(coordinator, message_store, feed) -> None:
    received = []
    states = []
    subscription = coordinator.subscribe("c1", received.append)
    subscription.on_state(states.append)
    message_store.append("c1", "student-1", "before drop")

    coordinator.connection_lost("c1")
    assert subscription.state is SubscriptionState.DEGRADED
    assert feed.registration_count() == 0
    message_store.append("c1", "student-1", "while offline")
    assert [item.content for item in received] == ["before drop"]

    replayed = coordinator.resubscribe("c1")
    message_store.append("c1", "student-1", "after reconnect")

    assert replayed == 1
    assert [item.content for item in received] == ["before drop", "while offline", "after reconnect"]
    assert states == [SubscriptionState.DEGRADED, SubscriptionState.OPEN]
    assert coordinator.is_registered("c1")
    subscription.close()


@pytest.mark.asyncio
async def test_wait_returns_next_message(coordinator, message_store) -> None:
    subscription = coordinator.subscribe("c1")

    async def produce() -> None:
        await asyncio.sleep(0.01)
        message_store.append("c1", "student-1", "live")

    producer = asyncio.create_task(produce())
    message = await subscription.wait(timeout=1.0)
    await producer

    assert message is not None
    assert message.content == "live"
    subscription.close()


@pytest.mark.asyncio
async def test_wait_times_out_and_close_unblocks(coordinator) -> None:
    subscription = coordinator.subscribe("c1")
    assert await subscription.wait(timeout=0.01) is None

    async def close_soon() -> None:
        await asyncio.sleep(0.01)
        subscription.close()

    closer = asyncio.create_task(close_soon())
    assert await subscription.wait(timeout=1.0) is None
    await closer
