"""Per-complaint conversation channels: append, replay and live subscription."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any

from .complaints import ANONYMOUS_SUBMITTER_ID, ComplaintStateMachine
from .delivery import MessageCallback, PresenceAndDeliveryCoordinator, Subscription
from .errors import PermissionDenied, ValidationFailed
from .identity import ProfileDirectory
from .models import Actor, Complaint, Message
from .observability import MetricsRecorder
from .storage import ComplaintStore, MessageStore

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ChannelSnapshot:
    """Ordered history of a conversation with resolved sender names."""

    complaint_id: str
    messages: tuple[Message, ...]
    names: dict[str, str] = field(default_factory=dict)
    watermark: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "complaint_id": self.complaint_id,
            "watermark": self.watermark,
            "messages": [
                {**message.to_dict(), "sender_name": self.names.get(message.sender_id, "Unknown")}
                for message in self.messages
            ],
        }


class ConversationChannel:
    """Message thread attached to a single complaint."""

    def __init__(
        self,
        complaint_id: str,
        *,
        complaints: ComplaintStore,
        messages: MessageStore,
        directory: ProfileDirectory,
        coordinator: PresenceAndDeliveryCoordinator,
        max_length: int = 1000,
        anonymous_name: str = "Anonymous Student",
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self.complaint_id = complaint_id
        self._complaints = complaints
        self._messages = messages
        self._directory = directory
        self._coordinator = coordinator
        self._max_length = max_length
        self._anonymous_name = anonymous_name
        self._metrics = metrics

    def append(self, sender: Actor, text: str) -> Message:
        content = (text or "").strip()
        if not content:
            raise ValidationFailed("Message cannot be empty")
        if len(content) > self._max_length:
            raise ValidationFailed(f"Message is too long (max {self._max_length} characters)")
        self._authorize(sender)
        message = self._messages.append(self.complaint_id, sender.id, content)
        logger.info(
            "channel.message.appended complaint=%s sender=%s seq=%s",
            self.complaint_id,
            sender.id,
            message.seq,
        )
        if self._metrics:
            self._metrics.increment("channel.messages", role=sender.role.value)
        return message

    def replay(self, reader: Actor) -> ChannelSnapshot:
        """Return the full ordered history with one batched name lookup."""

        complaint = self._authorize(reader)
        history = self._messages.list_messages(self.complaint_id)
        sender_ids = {message.sender_id for message in history}
        names = self._directory.display_names(sender_ids) if sender_ids else {}
        messages = tuple(self._present(message, complaint, reader) for message in history)
        if self._redacts(complaint, reader) and complaint.submitter_id in names:
            names.pop(complaint.submitter_id)
            names[ANONYMOUS_SUBMITTER_ID] = self._anonymous_name
        watermark = history[-1].seq if history else 0
        logger.debug(
            "channel.replayed complaint=%s messages=%s senders=%s",
            self.complaint_id,
            len(messages),
            len(sender_ids),
        )
        return ChannelSnapshot(self.complaint_id, messages, names, watermark)

    def subscribe(
        self,
        reader: Actor,
        on_message: MessageCallback | None = None,
        *,
        watermark: int = 0,
    ) -> Subscription:
        """Receive messages appended after this call; no history is sent."""

        complaint = self._authorize(reader)
        if watermark == 0:
            watermark = self._current_watermark()
        return self._coordinator.subscribe(
            self.complaint_id,
            on_message,
            watermark=watermark,
            transform=lambda message: self._present(message, complaint, reader),
        )

    def open(
        self,
        reader: Actor,
        on_message: MessageCallback | None = None,
    ) -> tuple[ChannelSnapshot, Subscription]:
        """Replay then subscribe, skipping messages already in the snapshot."""

        complaint = self._authorize(reader)
        snapshot = self.replay(reader)
        subscription = self._coordinator.subscribe(
            self.complaint_id,
            on_message,
            watermark=snapshot.watermark,
            transform=lambda message: self._present(message, complaint, reader),
        )
        missed = self._messages.list_after(self.complaint_id, snapshot.watermark)
        for message in missed:
            subscription.deliver(message)
        return snapshot, subscription

    def presence(self) -> int:
        return self._coordinator.presence(self.complaint_id)

    def _authorize(self, actor: Actor) -> Complaint:
        complaint = self._complaints.require(self.complaint_id)
        if not ComplaintStateMachine.can_read(actor, complaint):
            logger.warning(
                "channel.permission_denied complaint=%s actor=%s",
                self.complaint_id,
                actor.id,
            )
            raise PermissionDenied(f"{actor.role.value} may not access this conversation")
        return complaint

    def _current_watermark(self) -> int:
        history = self._messages.list_messages(self.complaint_id)
        return history[-1].seq if history else 0

    def _redacts(self, complaint: Complaint, reader: Actor) -> bool:
        return not ComplaintStateMachine.can_see_identity(reader, complaint)

    def _present(self, message: Message, complaint: Complaint, reader: Actor) -> Message:
        if self._redacts(complaint, reader) and message.sender_id == complaint.submitter_id:
            return replace(message, sender_id=ANONYMOUS_SUBMITTER_ID)
        return message


class ConversationHub:
    """Build channels for complaint ids over shared stores."""

    def __init__(
        self,
        *,
        complaints: ComplaintStore,
        messages: MessageStore,
        directory: ProfileDirectory,
        coordinator: PresenceAndDeliveryCoordinator,
        max_length: int = 1000,
        anonymous_name: str = "Anonymous Student",
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._complaints = complaints
        self._messages = messages
        self._directory = directory
        self._coordinator = coordinator
        self._max_length = max_length
        self._anonymous_name = anonymous_name
        self._metrics = metrics

    @property
    def coordinator(self) -> PresenceAndDeliveryCoordinator:
        return self._coordinator

    def channel(self, complaint_id: str) -> ConversationChannel:
        return ConversationChannel(
            complaint_id,
            complaints=self._complaints,
            messages=self._messages,
            directory=self._directory,
            coordinator=self._coordinator,
            max_length=self._max_length,
            anonymous_name=self._anonymous_name,
            metrics=self._metrics,
        )

    def append(self, complaint_id: str, sender: Actor, text: str) -> Message:
        return self.channel(complaint_id).append(sender, text)

    def replay(self, complaint_id: str, reader: Actor) -> ChannelSnapshot:
        return self.channel(complaint_id).replay(reader)

    def subscribe(
        self,
        complaint_id: str,
        reader: Actor,
        on_message: MessageCallback | None = None,
    ) -> Subscription:
        return self.channel(complaint_id).subscribe(reader, on_message)


__all__ = ["ChannelSnapshot", "ConversationChannel", "ConversationHub"]
