"""File-backed storage for complaints and messages plus an in-process change feed."""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterator
from uuid import uuid4

from .errors import NotFound
from .models import (
    Complaint,
    ComplaintCategory,
    ComplaintStatus,
    Message,
    utc_now,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

COMPLAINTS_TABLE = "complaints"
MESSAGES_TABLE = "messages"

_IMMUTABLE_FIELDS = {"id", "submitter_id", "created_at"}


@dataclass(slots=True, frozen=True)
class ChangeEvent:
    """A row-level change notification."""

    table: str
    action: str
    record: dict[str, Any]


ChangeCallback = Callable[[ChangeEvent], None]
ChangePredicate = Callable[[dict[str, Any]], bool]


class FeedRegistration:
    """Handle returned by :meth:`ChangeFeed.register`."""

    def __init__(
        self,
        feed: "ChangeFeed",
        table: str,
        callback: ChangeCallback,
        predicate: ChangePredicate | None,
    ) -> None:
        self._feed = feed
        self.table = table
        self.callback = callback
        self.predicate = predicate
        self.active = True

    def matches(self, event: ChangeEvent) -> bool:
        if not self.active or event.table != self.table:
            return False
        return self.predicate is None or bool(self.predicate(event.record))

    def release(self) -> None:
        if not self.active:
            return
        self.active = False
        self._feed._remove(self)


class ChangeFeed:
    """Synchronous publish/subscribe feed keyed by table and filter predicate."""

    def __init__(self) -> None:
        self._registrations: defaultdict[str, list[FeedRegistration]] = defaultdict(list)
        self._lock = threading.RLock()

    def register(
        self,
        table: str,
        callback: ChangeCallback,
        predicate: ChangePredicate | None = None,
    ) -> FeedRegistration:
        registration = FeedRegistration(self, table, callback, predicate)
        with self._lock:
            self._registrations[table].append(registration)
        logger.debug("feed.registered table=%s total=%s", table, self.registration_count(table))
        return registration

    def registration_count(self, table: str | None = None) -> int:
        with self._lock:
            if table is not None:
                return len(self._registrations.get(table, []))
            return sum(len(items) for items in self._registrations.values())

    def publish(self, table: str, action: str, record: dict[str, Any]) -> int:
        event = ChangeEvent(table=table, action=action, record=dict(record))
        with self._lock:
            targets = list(self._registrations.get(table, []))
        delivered = 0
        for registration in targets:
            if not registration.matches(event):
                continue
            try:
                registration.callback(event)
            except Exception:  # pragma: no cover - defensive guard
                logger.exception("feed.callback.failed table=%s action=%s", table, action)
                continue
            delivered += 1
        return delivered

    def _remove(self, registration: FeedRegistration) -> None:
        with self._lock:
            items = self._registrations.get(registration.table, [])
            if registration in items:
                items.remove(registration)
            if not items:
                self._registrations.pop(registration.table, None)
        logger.debug("feed.released table=%s", registration.table)


class ComplaintStore:
    """JSON file repository for complaint records."""

    def __init__(self, root: Path, *, feed: ChangeFeed | None = None) -> None:
        self._root = root
        self._path = root / "complaints.json"
        self._feed = feed
        self._lock = threading.RLock()
        self._root.mkdir(parents=True, exist_ok=True)

    def get(self, complaint_id: str) -> Complaint | None:
        for item in self._read().get("complaints", []):
            if item.get("id") == complaint_id:
                return Complaint.from_dict(item)
        return None

    def require(self, complaint_id: str) -> Complaint:
        complaint = self.get(complaint_id)
        if complaint is None:
            raise NotFound(f"Complaint {complaint_id} not found")
        return complaint

    def list_complaints(
        self,
        *,
        status: ComplaintStatus | None = None,
        category: ComplaintCategory | None = None,
        submitter_id: str | None = None,
        hub_id: str | None = None,
        starred: bool | None = None,
    ) -> list[Complaint]:
        complaints = [Complaint.from_dict(item) for item in self._read().get("complaints", [])]
        if status is not None:
            complaints = [item for item in complaints if item.status is status]
        if category is not None:
            complaints = [item for item in complaints if item.category is category]
        if submitter_id is not None:
            complaints = [item for item in complaints if item.submitter_id == submitter_id]
        if hub_id is not None:
            complaints = [item for item in complaints if item.hub_id == hub_id]
        if starred is not None:
            complaints = [item for item in complaints if item.starred == starred]
        complaints.sort(key=lambda item: item.created_at, reverse=True)
        return complaints

    def insert(self, complaint: Complaint) -> Complaint:
        with self._lock:
            data = self._read()
            data.setdefault("complaints", []).append(complaint.to_dict())
            self._write(data)
            self._publish("INSERT", complaint)
        logger.info(
            "complaint.stored id=%s category=%s urgency=%s",
            complaint.id,
            complaint.category.value,
            complaint.urgency.value,
        )
        return complaint

    def update(self, complaint_id: str, **changes: Any) -> Complaint:
        """Apply ``changes`` in a single write; last write wins."""

        blocked = _IMMUTABLE_FIELDS.intersection(changes)
        if blocked:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(blocked))}")
        with self._lock:
            data = self._read()
            for index, item in enumerate(data.get("complaints", [])):
                if item.get("id") != complaint_id:
                    continue
                current = Complaint.from_dict(item)
                for key, value in changes.items():
                    if not hasattr(current, key):
                        raise ValueError(f"Unknown complaint field '{key}'")
                    setattr(current, key, value)
                current.updated_at = utc_now_iso()
                data["complaints"][index] = current.to_dict()
                self._write(data)
                self._publish("UPDATE", current)
                return current
        raise NotFound(f"Complaint {complaint_id} not found")

    def delete(self, complaint_id: str) -> bool:
        with self._lock:
            data = self._read()
            items = data.get("complaints", [])
            remaining = [item for item in items if item.get("id") != complaint_id]
            if len(remaining) == len(items):
                return False
            removed = next(item for item in items if item.get("id") == complaint_id)
            data["complaints"] = remaining
            self._write(data)
            if self._feed is not None:
                self._feed.publish(COMPLAINTS_TABLE, "DELETE", removed)
        logger.info("complaint.deleted id=%s", complaint_id)
        return True

    def _publish(self, action: str, complaint: Complaint) -> None:
        if self._feed is not None:
            self._feed.publish(COMPLAINTS_TABLE, action, complaint.to_dict())

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {"complaints": []}
        with self._path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def _write(self, data: dict[str, Any]) -> None:
        tmp_path = self._path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
        tmp_path.replace(self._path)


class MessageStore:
    """Append-only JSONL message log, one file per complaint."""

    def __init__(self, root: Path, *, feed: ChangeFeed | None = None) -> None:
        self._root = root
        self._feed = feed
        self._lock = threading.RLock()
        self._tails: dict[str, tuple[int, datetime]] = {}
        self._root.mkdir(parents=True, exist_ok=True)

    def append(self, complaint_id: str, sender_id: str, content: str) -> Message:
        with self._lock:
            last_seq, last_created = self._tail(complaint_id)
            created = utc_now()
            if last_created is not None and created <= last_created:
                created = last_created + timedelta(microseconds=1)
            message = Message(
                id=uuid4().hex,
                complaint_id=complaint_id,
                sender_id=sender_id,
                content=content,
                created_at=created.isoformat(),
                seq=last_seq + 1,
            )
            path = self._path_for(complaint_id)
            with path.open("a", encoding="utf-8") as handle:
                json.dump(message.to_dict(), handle)
                handle.write("\n")
            self._tails[complaint_id] = (message.seq, created)
            logger.debug(
                "message.appended complaint=%s seq=%s id=%s",
                complaint_id,
                message.seq,
                message.id,
            )
            # Published under the lock so feed order matches append order.
            if self._feed is not None:
                self._feed.publish(MESSAGES_TABLE, "INSERT", message.to_dict())
        return message

    def list_messages(self, complaint_id: str) -> list[Message]:
        messages = list(self._iter_messages(complaint_id))
        messages.sort(key=lambda item: (item.created_at, item.seq))
        return messages

    def list_after(self, complaint_id: str, seq: int) -> list[Message]:
        return [item for item in self.list_messages(complaint_id) if item.seq > seq]

    def delete_thread(self, complaint_id: str) -> int:
        with self._lock:
            path = self._path_for(complaint_id)
            if not path.exists():
                return 0
            count = sum(1 for _ in self._iter_messages(complaint_id))
            path.unlink()
            self._tails.pop(complaint_id, None)
        logger.info("message.thread.deleted complaint=%s messages=%s", complaint_id, count)
        return count

    def _tail(self, complaint_id: str) -> tuple[int, datetime | None]:
        cached = self._tails.get(complaint_id)
        if cached is not None:
            return cached
        last_seq = 0
        last_created: datetime | None = None
        for message in self._iter_messages(complaint_id):
            created = datetime.fromisoformat(message.created_at)
            last_seq = max(last_seq, message.seq)
            if last_created is None or created > last_created:
                last_created = created
        if last_created is not None:
            self._tails[complaint_id] = (last_seq, last_created)
        return last_seq, last_created

    def _iter_messages(self, complaint_id: str) -> Iterator[Message]:
        path = self._path_for(complaint_id)
        if not path.exists():
            return
        with path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:  # pragma: no cover - defensive guard
                    logger.warning("message.log.decode_failed path=%s", path)
                    continue
                yield Message.from_dict(data)

    def _path_for(self, complaint_id: str) -> Path:
        safe_id = complaint_id.replace("/", "-")
        return self._root / f"{safe_id}.jsonl"


__all__ = [
    "COMPLAINTS_TABLE",
    "MESSAGES_TABLE",
    "ChangeEvent",
    "ChangeFeed",
    "ComplaintStore",
    "FeedRegistration",
    "MessageStore",
]
