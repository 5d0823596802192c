from __future__ import annotations

from datetime import datetime

import pytest

from complaintdesk.errors import NotFound, PermissionDenied, ValidationFailed


def test_append_then_replay_returns_message_last(hub, student, reviewer, make_complaint) -> None:
    complaint = make_complaint()
    channel = hub.channel(complaint.id)
    channel.append(reviewer, "We are checking the projector.")

    message = channel.append(student, "  Thanks!  ")
    snapshot = channel.replay(reviewer)

    assert snapshot.messages[-1].id == message.id
    assert snapshot.messages[-1].content == "Thanks!"
    assert snapshot.watermark == message.seq
    assert snapshot.names == {"student-1": "Asha Menon", "reviewer-1": "Nadia Reviewer"}


def test_timestamps_and_sequence_strictly_increase(hub, student, make_complaint) -> None:
    complaint = make_complaint()
    channel = hub.channel(complaint.id)
    messages = [channel.append(student, f"message {index}") for index in range(5)]

    stamps = [datetime.fromisoformat(item.created_at) for item in messages]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)
    assert [item.seq for item in messages] == [1, 2, 3, 4, 5]


def test_replay_uses_single_batched_lookup(hub, student, reviewer, admin, make_complaint, directory) -> None:
    complaint = make_complaint()
    channel = hub.channel(complaint.id)
    for actor in (student, reviewer, admin, student, reviewer):
        channel.append(actor, f"hello from {actor.id}")
    before = directory.batch_lookups

    snapshot = channel.replay(student)

    assert directory.batch_lookups == before + 1
    assert set(snapshot.names) == {"student-1", "reviewer-1", "admin-1"}


def test_append_validation(hub, student, make_complaint, message_store) -> None:
    complaint = make_complaint()
    channel = hub.channel(complaint.id)
    with pytest.raises(ValidationFailed):
        channel.append(student, "   ")
    with pytest.raises(ValidationFailed):
        channel.append(student, "x" * 1001)
    channel.append(student, "x" * 1000)
    assert len(message_store.list_messages(complaint.id)) == 1


def test_append_requires_read_access(hub, other_student, make_complaint, message_store) -> None:
    complaint = make_complaint()
    with pytest.raises(PermissionDenied):
        hub.append(complaint.id, other_student, "Let me in")
    with pytest.raises(PermissionDenied):
        hub.replay(complaint.id, other_student)
    assert message_store.list_messages(complaint.id) == []


def test_append_to_missing_complaint(hub, reviewer) -> None:
    with pytest.raises(NotFound):
        hub.append("missing", reviewer, "hello")


def test_subscribe_delivers_only_new_messages(hub, student, reviewer, make_complaint) -> None:
    complaint = make_complaint()
    hub.append(complaint.id, student, "before subscribing")
    received = []

    subscription = hub.subscribe(complaint.id, reviewer, received.append)
    hub.append(complaint.id, student, "after subscribing")

    assert [item.content for item in received] == ["after subscribing"]
    subscription.close()


def test_anonymous_submitter_redacted_in_conversation(hub, student, reviewer, make_complaint) -> None:
    complaint = make_complaint(is_anonymous=True)
    channel = hub.channel(complaint.id)
    channel.append(student, "Please keep this private.")
    channel.append(reviewer, "Understood.")
    live = []
    subscription = channel.subscribe(reviewer, live.append)
    channel.append(student, "Thank you.")

    staff_view = channel.replay(reviewer)
    own_view = channel.replay(student)

    assert [item.sender_id for item in staff_view.messages] == ["anonymous", "reviewer-1", "anonymous"]
    assert staff_view.names["anonymous"] == "Anonymous Student"
    assert "student-1" not in staff_view.names
    assert own_view.messages[0].sender_id == "student-1"
    assert own_view.names["student-1"] == "Asha Menon"
    assert [item.sender_id for item in live] == ["anonymous"]
    subscription.close()


def test_open_replays_then_follows_without_duplicates(hub, student, reviewer, make_complaint) -> None:
    complaint = make_complaint()
    channel = hub.channel(complaint.id)
    channel.append(student, "first")
    received = []

    snapshot, subscription = channel.open(reviewer, received.append)
    channel.append(student, "second")

    assert [item.content for item in snapshot.messages] == ["first"]
    assert [item.content for item in received] == ["second"]
    assert channel.presence() == 1
    subscription.close()
    assert channel.presence() == 0


def test_snapshot_serialises_sender_names(hub, student, make_complaint) -> None:
    complaint = make_complaint()
    hub.append(complaint.id, student, "hello")

    payload = hub.replay(complaint.id, student).to_dict()

    assert payload["watermark"] == 1
    assert payload["messages"][0]["sender_name"] == "Asha Menon"
