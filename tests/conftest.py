from __future__ import annotations

import pytest

from complaintdesk.channels import ConversationHub
from complaintdesk.complaints import ComplaintDraft, ComplaintStateMachine
from complaintdesk.delivery import PresenceAndDeliveryCoordinator
from complaintdesk.identity import Profile, ProfileDirectory
from complaintdesk.models import Role
from complaintdesk.storage import ChangeFeed, ComplaintStore, MessageStore


@pytest.fixture()
def directory() -> ProfileDirectory:
    return ProfileDirectory(
        [
            Profile(id="student-1", name="Asha Menon", role=Role.SUBMITTER, email="asha@example.com"),
            Profile(id="student-2", name="Ravi Kumar", role=Role.SUBMITTER),
            Profile(id="reviewer-1", name="Nadia Reviewer", role=Role.REVIEWER, email="nadia@example.com"),
            Profile(id="admin-1", name="Omar Admin", role=Role.ADMINISTRATOR, email="omar@example.com"),
        ]
    )


@pytest.fixture()
def student(directory):
    return directory.actor("student-1")


@pytest.fixture()
def other_student(directory):
    return directory.actor("student-2")


@pytest.fixture()
def reviewer(directory):
    return directory.actor("reviewer-1")


@pytest.fixture()
def admin(directory):
    return directory.actor("admin-1")


@pytest.fixture()
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture()
def complaint_store(tmp_path, feed) -> ComplaintStore:
    return ComplaintStore(tmp_path, feed=feed)


@pytest.fixture()
def message_store(tmp_path, feed) -> MessageStore:
    return MessageStore(tmp_path / "messages", feed=feed)


@pytest.fixture()
def machine(complaint_store, message_store, directory) -> ComplaintStateMachine:
    return ComplaintStateMachine(complaint_store, directory, messages=message_store)


@pytest.fixture()
def coordinator(feed, message_store) -> PresenceAndDeliveryCoordinator:
    return PresenceAndDeliveryCoordinator(feed, message_store, buffer_size=16)


@pytest.fixture()
def hub(complaint_store, message_store, directory, coordinator) -> ConversationHub:
    return ConversationHub(
        complaints=complaint_store,
        messages=message_store,
        directory=directory,
        coordinator=coordinator,
    )


@pytest.fixture()
def make_complaint(machine, student):
    def _make(actor=None, **overrides):
        fields = {
            "title": "Projector broken",
            "description": "The projector in room 4 has not worked for a week.",
            "category": "Hub",
        }
        fields.update(overrides)
        return machine.submit(actor or student, ComplaintDraft(**fields))

    return _make
