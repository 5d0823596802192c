"""Domain records shared across the complaint desk."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import ValidationFailed


class _ChoiceEnum(str, Enum):
    @classmethod
    def parse(cls, value: Any):
        if isinstance(value, cls):
            return value
        text = str(value or "").strip()
        for member in cls:
            if member.value.lower() == text.lower():
                return member
        choices = ", ".join(member.value for member in cls)
        raise ValidationFailed(f"Invalid {cls.__name__} '{value}'; expected one of: {choices}")


class ComplaintStatus(_ChoiceEnum):
    PENDING = "Pending"
    IN_REVIEW = "In Review"
    RESOLVED = "Resolved"


class ComplaintUrgency(_ChoiceEnum):
    LOW = "Low"
    NORMAL = "Normal"
    HIGH = "High"
    CRITICAL = "Critical"


class ComplaintCategory(_ChoiceEnum):
    COMMUNICATION = "Communication"
    HUB = "Hub"
    REVIEW = "Review"
    PAYMENTS = "Payments"
    OTHERS = "Others"


class Role(_ChoiceEnum):
    SUBMITTER = "submitter"
    REVIEWER = "reviewer"
    ADMINISTRATOR = "administrator"


@dataclass(slots=True, frozen=True)
class Actor:
    """The caller of an operation, as supplied by the identity collaborator."""

    id: str
    role: Role
    name: str = ""

    @property
    def is_staff(self) -> bool:
        return self.role in {Role.REVIEWER, Role.ADMINISTRATOR}


@dataclass(slots=True)
class Complaint:
    """Persisted complaint record."""

    id: str
    submitter_id: str
    title: str
    description: str
    category: ComplaintCategory
    status: ComplaintStatus
    urgency: ComplaintUrgency
    created_at: str
    updated_at: str
    is_anonymous: bool = False
    hub_id: str | None = None
    resolution_note: str | None = None
    attachment_url: str | None = None
    starred: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["category"] = self.category.value
        payload["status"] = self.status.value
        payload["urgency"] = self.urgency.value
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Complaint":
        created_at = data.get("created_at") or utc_now_iso()
        return cls(
            id=str(data["id"]),
            submitter_id=str(data["submitter_id"]),
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            category=ComplaintCategory.parse(data.get("category", ComplaintCategory.OTHERS)),
            status=ComplaintStatus.parse(data.get("status", ComplaintStatus.PENDING)),
            urgency=ComplaintUrgency.parse(data.get("urgency", ComplaintUrgency.NORMAL)),
            created_at=created_at,
            updated_at=data.get("updated_at") or created_at,
            is_anonymous=bool(data.get("is_anonymous", False)),
            hub_id=data.get("hub_id"),
            resolution_note=data.get("resolution_note"),
            attachment_url=data.get("attachment_url"),
            starred=bool(data.get("starred", False)),
        )


@dataclass(slots=True, frozen=True)
class Message:
    """A single append-only chat message attached to a complaint."""

    id: str
    complaint_id: str
    sender_id: str
    content: str
    created_at: str
    seq: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            id=str(data["id"]),
            complaint_id=str(data["complaint_id"]),
            sender_id=str(data["sender_id"]),
            content=str(data.get("content", "")),
            created_at=str(data["created_at"]),
            seq=int(data.get("seq", 0)),
        )


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


__all__ = [
    "Actor",
    "Complaint",
    "ComplaintCategory",
    "ComplaintStatus",
    "ComplaintUrgency",
    "Message",
    "Role",
    "utc_now",
    "utc_now_iso",
]
