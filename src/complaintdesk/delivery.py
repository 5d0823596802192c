"""Fan-out of live message notifications to per-view subscriptions."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from enum import Enum
from typing import Callable

from .models import Message
from .observability import MetricsRecorder
from .storage import MESSAGES_TABLE, ChangeEvent, ChangeFeed, FeedRegistration, MessageStore

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Message], None]
MessageTransform = Callable[[Message], Message]
StateListener = Callable[["SubscriptionState"], None]


class SubscriptionState(str, Enum):
    OPEN = "open"
    DEGRADED = "degraded"
    CLOSED = "closed"


class Subscription:
    """Handle for one live view of a complaint's conversation.

    With a callback, messages are pushed as they arrive. Without one they are
    buffered (bounded, oldest dropped first) for :meth:`drain` or :meth:`wait`.
    A message is delivered at most once: ids already seen and sequence numbers
    at or below the watermark are ignored.
    """

    def __init__(
        self,
        coordinator: "PresenceAndDeliveryCoordinator",
        complaint_id: str,
        on_message: MessageCallback | None = None,
        *,
        watermark: int = 0,
        buffer_size: int = 256,
        transform: MessageTransform | None = None,
    ) -> None:
        self._coordinator = coordinator
        self.complaint_id = complaint_id
        self._on_message = on_message
        self._transform = transform
        self._watermark = watermark
        self._seen_ids: set[str] = set()
        self._buffer: deque[Message] = deque(maxlen=max(1, buffer_size))
        self._state = SubscriptionState.OPEN
        self._state_listeners: list[StateListener] = []
        self._lock = threading.Lock()
        self._waiter: asyncio.Event | None = None
        self._waiter_loop: asyncio.AbstractEventLoop | None = None
        self.delivered_count = 0
        self.duplicate_count = 0

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def watermark(self) -> int:
        return self._watermark

    @property
    def closed(self) -> bool:
        return self._state is SubscriptionState.CLOSED

    def on_state(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def close(self) -> None:
        if self._state is SubscriptionState.CLOSED:
            return
        self._set_state(SubscriptionState.CLOSED)
        self._coordinator._detach(self)
        self._wake()

    def drain(self) -> list[Message]:
        with self._lock:
            items = list(self._buffer)
            self._buffer.clear()
        return items

    async def wait(self, timeout: float | None = None) -> Message | None:
        """Return the next buffered message, or ``None`` on timeout or close."""

        while True:
            with self._lock:
                if self._buffer:
                    return self._buffer.popleft()
                if self._state is SubscriptionState.CLOSED:
                    return None
                self._waiter_loop = asyncio.get_running_loop()
                self._waiter = asyncio.Event()
                waiter = self._waiter
            try:
                await asyncio.wait_for(waiter.wait(), timeout)
            except asyncio.TimeoutError:
                return None
            finally:
                with self._lock:
                    if self._waiter is waiter:
                        self._waiter = None
                        self._waiter_loop = None

    def deliver(self, message: Message) -> bool:
        """Accept ``message`` unless closed or already seen."""

        with self._lock:
            if self._state is SubscriptionState.CLOSED:
                return False
            if message.id in self._seen_ids or message.seq <= self._watermark:
                self.duplicate_count += 1
                logger.debug(
                    "delivery.duplicate complaint=%s id=%s seq=%s",
                    self.complaint_id,
                    message.id,
                    message.seq,
                )
                return False
            self._seen_ids.add(message.id)
            self._watermark = message.seq
            self.delivered_count += 1
            outgoing = self._transform(message) if self._transform else message
            if self._on_message is None:
                if len(self._buffer) == self._buffer.maxlen:
                    logger.warning(
                        "delivery.buffer.overflow complaint=%s size=%s",
                        self.complaint_id,
                        self._buffer.maxlen,
                    )
                self._buffer.append(outgoing)
        if self._on_message is not None:
            self._on_message(outgoing)
        else:
            self._wake()
        return True

    def _set_state(self, state: SubscriptionState) -> None:
        if self._state is state:
            return
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:  # pragma: no cover - defensive guard
                logger.exception("delivery.state_listener.failed complaint=%s", self.complaint_id)

    def _wake(self) -> None:
        waiter, loop = self._waiter, self._waiter_loop
        if waiter is None or loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(waiter.set)


class PresenceAndDeliveryCoordinator:
    """Keep one change-feed registration per complaint with open subscriptions."""

    def __init__(
        self,
        feed: ChangeFeed,
        messages: MessageStore,
        *,
        buffer_size: int = 256,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._feed = feed
        self._messages = messages
        self._buffer_size = buffer_size
        self._metrics = metrics
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._registrations: dict[str, FeedRegistration] = {}
        self._lock = threading.RLock()

    def subscribe(
        self,
        complaint_id: str,
        on_message: MessageCallback | None = None,
        *,
        watermark: int = 0,
        transform: MessageTransform | None = None,
    ) -> Subscription:
        subscription = Subscription(
            self,
            complaint_id,
            on_message,
            watermark=watermark,
            buffer_size=self._buffer_size,
            transform=transform,
        )
        with self._lock:
            self._subscriptions.setdefault(complaint_id, []).append(subscription)
            if complaint_id not in self._registrations:
                self._register(complaint_id)
        logger.info(
            "delivery.subscribed complaint=%s presence=%s watermark=%s",
            complaint_id,
            self.presence(complaint_id),
            watermark,
        )
        self._record_gauges()
        return subscription

    def presence(self, complaint_id: str) -> int:
        with self._lock:
            return sum(1 for item in self._subscriptions.get(complaint_id, []) if not item.closed)

    def is_registered(self, complaint_id: str) -> bool:
        with self._lock:
            return complaint_id in self._registrations

    def connection_lost(self, complaint_id: str) -> None:
        """Mark subscriptions degraded and drop the feed registration; buffers are kept."""

        with self._lock:
            registration = self._registrations.pop(complaint_id, None)
            subscriptions = list(self._subscriptions.get(complaint_id, []))
        if registration is not None:
            registration.release()
        for subscription in subscriptions:
            subscription._set_state(SubscriptionState.DEGRADED)
        logger.warning("delivery.connection_lost complaint=%s subscriptions=%s", complaint_id, len(subscriptions))
        if self._metrics:
            self._metrics.increment("delivery.connection_lost")
        self._record_gauges()

    def resubscribe(self, complaint_id: str) -> int:
        """Re-register and replay anything each subscription missed; return messages replayed."""

        replayed = 0
        with self._lock:
            subscriptions = [item for item in self._subscriptions.get(complaint_id, []) if not item.closed]
            if not subscriptions:
                return 0
            if complaint_id not in self._registrations:
                self._register(complaint_id)
            floor = min(item.watermark for item in subscriptions)
            missed = self._messages.list_after(complaint_id, floor)
            for subscription in subscriptions:
                for message in missed:
                    if self._deliver_one(subscription, message):
                        replayed += 1
                subscription._set_state(SubscriptionState.OPEN)
        logger.info("delivery.resubscribed complaint=%s replayed=%s", complaint_id, replayed)
        self._record_gauges()
        return replayed

    def close_all(self) -> None:
        with self._lock:
            subscriptions = [item for items in self._subscriptions.values() for item in items]
        for subscription in subscriptions:
            subscription.close()

    def _register(self, complaint_id: str) -> None:
        self._registrations[complaint_id] = self._feed.register(
            MESSAGES_TABLE,
            lambda event: self._on_event(complaint_id, event),
            lambda record: record.get("complaint_id") == complaint_id,
        )
        logger.debug("delivery.feed.registered complaint=%s", complaint_id)

    def _on_event(self, complaint_id: str, event: ChangeEvent) -> None:
        if event.action != "INSERT":
            return
        message = Message.from_dict(event.record)
        with self._lock:
            subscriptions = list(self._subscriptions.get(complaint_id, []))
            for subscription in subscriptions:
                self._deliver_one(subscription, message)

    def _deliver_one(self, subscription: Subscription, message: Message) -> bool:
        try:
            return subscription.deliver(message)
        except Exception:
            logger.exception(
                "delivery.callback.failed complaint=%s id=%s",
                subscription.complaint_id,
                message.id,
            )
            if self._metrics:
                self._metrics.increment("delivery.callback_failures")
            return False

    def _detach(self, subscription: Subscription) -> None:
        registration: FeedRegistration | None = None
        with self._lock:
            items = self._subscriptions.get(subscription.complaint_id, [])
            if subscription in items:
                items.remove(subscription)
            if not items:
                self._subscriptions.pop(subscription.complaint_id, None)
                registration = self._registrations.pop(subscription.complaint_id, None)
        if registration is not None:
            registration.release()
            logger.debug("delivery.feed.released complaint=%s", subscription.complaint_id)
        logger.info(
            "delivery.unsubscribed complaint=%s presence=%s",
            subscription.complaint_id,
            self.presence(subscription.complaint_id),
        )
        self._record_gauges()

    def _record_gauges(self) -> None:
        if not self._metrics:
            return
        with self._lock:
            open_count = sum(len(items) for items in self._subscriptions.values())
            registrations = len(self._registrations)
        self._metrics.set_gauge("delivery.subscriptions", open_count)
        self._metrics.set_gauge("delivery.feed_registrations", registrations)


__all__ = [
    "PresenceAndDeliveryCoordinator",
    "Subscription",
    "SubscriptionState",
]
