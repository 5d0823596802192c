"""Complaint lifecycle: authorization and derived-field consistency.

Status moves freely between ``Pending``, ``In Review`` and ``Resolved``; what
this module enforces is *who* may write which fields and that compound writes
(status + resolution note) land in a single store update. Concurrent writers
are last-write-wins.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any
from uuid import uuid4

from .errors import PermissionDenied, ValidationFailed
from .identity import ProfileDirectory
from .models import (
    Actor,
    Complaint,
    ComplaintCategory,
    ComplaintStatus,
    ComplaintUrgency,
    Role,
    utc_now_iso,
)
from .observability import MetricsRecorder
from .storage import ComplaintStore, MessageStore

logger = logging.getLogger(__name__)

TITLE_MIN_LENGTH = 3
TITLE_MAX_LENGTH = 200
DESCRIPTION_MIN_LENGTH = 10
DESCRIPTION_MAX_LENGTH = 2000
RESOLUTION_NOTE_MAX_LENGTH = 2000
ANONYMOUS_SUBMITTER_ID = "anonymous"

_UNSET: Any = object()


@dataclass(slots=True)
class ComplaintDraft:
    """Fields a submitter provides when filing a complaint."""

    title: str
    description: str
    category: ComplaintCategory | str
    urgency: ComplaintUrgency | str = ComplaintUrgency.NORMAL
    hub_id: str | None = None
    is_anonymous: bool = False
    attachment_url: str | None = None


@dataclass(slots=True, frozen=True)
class ComplaintView:
    """A complaint as seen by a particular actor, with identity redacted when required."""

    id: str
    title: str
    description: str
    category: str
    status: str
    urgency: str
    is_anonymous: bool
    hub_id: str | None
    resolution_note: str | None
    attachment_url: str | None
    starred: bool
    created_at: str
    updated_at: str
    submitter_id: str
    submitter_name: str
    identity_redacted: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ComplaintStateMachine:
    """Apply role-checked mutations to complaint records."""

    def __init__(
        self,
        store: ComplaintStore,
        directory: ProfileDirectory,
        *,
        messages: MessageStore | None = None,
        anonymous_name: str = "Anonymous Student",
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._store = store
        self._directory = directory
        self._messages = messages
        self._anonymous_name = anonymous_name
        self._metrics = metrics

    # Permission facts -------------------------------------------------

    @staticmethod
    def can_read(actor: Actor, complaint: Complaint) -> bool:
        return actor.is_staff or complaint.submitter_id == actor.id

    @staticmethod
    def can_moderate(actor: Actor) -> bool:
        return actor.is_staff

    @staticmethod
    def can_delete(actor: Actor, complaint: Complaint) -> bool:
        if actor.role is Role.ADMINISTRATOR:
            return True
        return (
            actor.role is Role.SUBMITTER
            and complaint.submitter_id == actor.id
            and complaint.status is not ComplaintStatus.RESOLVED
        )

    @staticmethod
    def can_see_identity(actor: Actor, complaint: Complaint) -> bool:
        return not complaint.is_anonymous or complaint.submitter_id == actor.id

    # Reads ------------------------------------------------------------

    def get(self, actor: Actor, complaint_id: str) -> Complaint:
        complaint = self._store.require(complaint_id)
        if not self.can_read(actor, complaint):
            self._deny(actor, "read", complaint_id)
        return complaint

    def view(self, actor: Actor, complaint: Complaint, *, names: dict[str, str] | None = None) -> ComplaintView:
        redacted = not self.can_see_identity(actor, complaint)
        if redacted:
            submitter_id = ANONYMOUS_SUBMITTER_ID
            submitter_name = self._anonymous_name
        else:
            submitter_id = complaint.submitter_id
            if names is None:
                names = self._directory.display_names([complaint.submitter_id])
            submitter_name = names.get(complaint.submitter_id, "Unknown")
        return ComplaintView(
            id=complaint.id,
            title=complaint.title,
            description=complaint.description,
            category=complaint.category.value,
            status=complaint.status.value,
            urgency=complaint.urgency.value,
            is_anonymous=complaint.is_anonymous,
            hub_id=complaint.hub_id,
            resolution_note=complaint.resolution_note,
            attachment_url=complaint.attachment_url,
            starred=complaint.starred,
            created_at=complaint.created_at,
            updated_at=complaint.updated_at,
            submitter_id=submitter_id,
            submitter_name=submitter_name,
            identity_redacted=redacted,
        )

    def list_for(
        self,
        actor: Actor,
        *,
        status: ComplaintStatus | str | None = None,
        category: ComplaintCategory | str | None = None,
        hub_id: str | None = None,
        starred: bool | None = None,
        submitter_id: str | None = None,
    ) -> list[ComplaintView]:
        """List complaints visible to ``actor``; submitters only see their own."""

        if actor.role is Role.SUBMITTER:
            submitter_id = actor.id
        complaints = self._store.list_complaints(
            status=ComplaintStatus.parse(status) if status else None,
            category=ComplaintCategory.parse(category) if category else None,
            hub_id=hub_id,
            starred=starred,
            submitter_id=submitter_id,
        )
        if submitter_id is not None:
            # Filtering by submitter must not tie anonymous complaints to a person.
            complaints = [item for item in complaints if self.can_see_identity(actor, item)]
        visible_ids = {item.submitter_id for item in complaints if self.can_see_identity(actor, item)}
        names = self._directory.display_names(visible_ids) if visible_ids else {}
        return [self.view(actor, item, names=names) for item in complaints]

    def status_counts(self, actor: Actor) -> dict[str, int]:
        counts = {status.value: 0 for status in ComplaintStatus}
        for view in self.list_for(actor):
            counts[view.status] += 1
        return counts

    # Writes -----------------------------------------------------------

    def submit(self, actor: Actor, draft: ComplaintDraft) -> Complaint:
        if actor.role is not Role.SUBMITTER:
            self._deny(actor, "submit", None)
        title = _bounded_text(draft.title, "Title", TITLE_MIN_LENGTH, TITLE_MAX_LENGTH)
        description = _bounded_text(
            draft.description, "Description", DESCRIPTION_MIN_LENGTH, DESCRIPTION_MAX_LENGTH
        )
        category = ComplaintCategory.parse(draft.category)
        urgency = ComplaintUrgency.parse(draft.urgency or ComplaintUrgency.NORMAL)
        now = utc_now_iso()
        complaint = Complaint(
            id=uuid4().hex,
            submitter_id=actor.id,
            title=title,
            description=description,
            category=category,
            status=ComplaintStatus.PENDING,
            urgency=urgency,
            created_at=now,
            updated_at=now,
            is_anonymous=bool(draft.is_anonymous),
            hub_id=_optional_text(draft.hub_id),
            attachment_url=_optional_text(draft.attachment_url),
        )
        self._store.insert(complaint)
        logger.info(
            "complaint.submitted id=%s submitter=%s urgency=%s anonymous=%s",
            complaint.id,
            actor.id,
            urgency.value,
            complaint.is_anonymous,
        )
        if self._metrics:
            self._metrics.increment("complaint.submitted", category=category.value, urgency=urgency.value)
        return complaint

    def update_status(self, actor: Actor, complaint_id: str, status: ComplaintStatus | str) -> Complaint:
        """Change status only; the resolution note is left as it is."""

        self._require_moderator(actor, "update_status", complaint_id)
        target = ComplaintStatus.parse(status)
        self._store.require(complaint_id)
        updated = self._store.update(complaint_id, status=target)
        self._record_status(actor, updated, "update_status")
        return updated

    def resolve(self, actor: Actor, complaint_id: str, note: str) -> Complaint:
        """Commit a resolution note and mark the complaint resolved in one write."""

        self._require_moderator(actor, "resolve", complaint_id)
        text = _bounded_text(note, "Resolution note", 1, RESOLUTION_NOTE_MAX_LENGTH)
        self._store.require(complaint_id)
        updated = self._store.update(
            complaint_id,
            status=ComplaintStatus.RESOLVED,
            resolution_note=text,
        )
        self._record_status(actor, updated, "resolve")
        return updated

    def review(
        self,
        actor: Actor,
        complaint_id: str,
        status: ComplaintStatus | str,
        note: str | None,
    ) -> Complaint:
        """Write status and note together; a blank note clears it."""

        self._require_moderator(actor, "review", complaint_id)
        target = ComplaintStatus.parse(status)
        cleaned = (note or "").strip() or None
        if cleaned is not None and len(cleaned) > RESOLUTION_NOTE_MAX_LENGTH:
            raise ValidationFailed("Resolution note is too long")
        self._store.require(complaint_id)
        updated = self._store.update(complaint_id, status=target, resolution_note=cleaned)
        self._record_status(actor, updated, "review")
        return updated

    def reopen(self, actor: Actor, complaint_id: str) -> Complaint:
        return self.update_status(actor, complaint_id, ComplaintStatus.PENDING)

    def set_starred(self, actor: Actor, complaint_id: str, starred: bool) -> Complaint:
        self._require_moderator(actor, "star", complaint_id)
        self._store.require(complaint_id)
        updated = self._store.update(complaint_id, starred=bool(starred))
        logger.info("complaint.starred id=%s actor=%s starred=%s", complaint_id, actor.id, updated.starred)
        return updated

    def edit_details(
        self,
        actor: Actor,
        complaint_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        hub_id: str | None = _UNSET,
        attachment_url: str | None = _UNSET,
        category: ComplaintCategory | str | None = None,
        urgency: ComplaintUrgency | str | None = None,
        is_anonymous: bool | None = None,
    ) -> Complaint:
        """Let a submitter edit the free-text parts of their own complaint.

        Category, urgency and anonymity are fixed at creation; passing the
        current value is accepted, passing a different one is rejected.
        """

        complaint = self._store.require(complaint_id)
        if actor.role is not Role.SUBMITTER or complaint.submitter_id != actor.id:
            self._deny(actor, "edit", complaint_id)
        if category is not None and ComplaintCategory.parse(category) is not complaint.category:
            raise ValidationFailed("Category cannot be changed after submission")
        if urgency is not None and ComplaintUrgency.parse(urgency) is not complaint.urgency:
            raise ValidationFailed("Urgency cannot be changed after submission")
        if is_anonymous is not None and bool(is_anonymous) != complaint.is_anonymous:
            raise ValidationFailed("Anonymity cannot be changed after submission")

        changes: dict[str, Any] = {}
        if title is not None:
            changes["title"] = _bounded_text(title, "Title", TITLE_MIN_LENGTH, TITLE_MAX_LENGTH)
        if description is not None:
            changes["description"] = _bounded_text(
                description, "Description", DESCRIPTION_MIN_LENGTH, DESCRIPTION_MAX_LENGTH
            )
        if hub_id is not _UNSET:
            changes["hub_id"] = _optional_text(hub_id)
        if attachment_url is not _UNSET:
            changes["attachment_url"] = _optional_text(attachment_url)
        if not changes:
            return complaint
        updated = self._store.update(complaint_id, **changes)
        logger.info("complaint.edited id=%s fields=%s", complaint_id, sorted(changes))
        return updated

    def delete(self, actor: Actor, complaint_id: str) -> None:
        complaint = self._store.require(complaint_id)
        if not self.can_delete(actor, complaint):
            self._deny(actor, "delete", complaint_id)
        self._store.delete(complaint_id)
        removed = self._messages.delete_thread(complaint_id) if self._messages is not None else 0
        logger.info("complaint.removed id=%s actor=%s messages=%s", complaint_id, actor.id, removed)
        if self._metrics:
            self._metrics.increment("complaint.deleted", role=actor.role.value)

    # Helpers ----------------------------------------------------------

    def _require_moderator(self, actor: Actor, action: str, complaint_id: str | None) -> None:
        if not self.can_moderate(actor):
            self._deny(actor, action, complaint_id)

    def _deny(self, actor: Actor, action: str, complaint_id: str | None) -> None:
        logger.warning(
            "complaint.permission_denied action=%s actor=%s role=%s id=%s",
            action,
            actor.id,
            actor.role.value,
            complaint_id,
        )
        if self._metrics:
            self._metrics.increment("complaint.permission_denied", action=action, role=actor.role.value)
        raise PermissionDenied(f"{actor.role.value} may not {action.replace('_', ' ')} this complaint")

    def _record_status(self, actor: Actor, complaint: Complaint, action: str) -> None:
        logger.info(
            "complaint.status.updated id=%s actor=%s action=%s status=%s has_note=%s",
            complaint.id,
            actor.id,
            action,
            complaint.status.value,
            complaint.resolution_note is not None,
        )
        if self._metrics:
            self._metrics.increment("complaint.status_updates", action=action, status=complaint.status.value)


def _bounded_text(value: Any, label: str, minimum: int, maximum: int) -> str:
    text = str(value or "").strip()
    if len(text) < minimum:
        if minimum <= 1:
            raise ValidationFailed(f"{label} is required")
        raise ValidationFailed(f"{label} must be at least {minimum} characters")
    if len(text) > maximum:
        raise ValidationFailed(f"{label} is too long (max {maximum} characters)")
    return text


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = [
    "ANONYMOUS_SUBMITTER_ID",
    "ComplaintDraft",
    "ComplaintStateMachine",
    "ComplaintView",
]
