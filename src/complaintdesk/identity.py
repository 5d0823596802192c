"""Profile directory used to resolve actors and display names."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import yaml

from .errors import NotFound, ValidationFailed
from .models import Actor, Role

logger = logging.getLogger(__name__)

UNKNOWN_DISPLAY_NAME = "Unknown"


@dataclass(slots=True, frozen=True)
class Profile:
    """A known person: submitter, reviewer or administrator."""

    id: str
    name: str
    role: Role
    email: str | None = None
    hub_id: str | None = None

    def as_actor(self) -> Actor:
        return Actor(id=self.id, role=self.role, name=self.name)


class ProfileDirectory:
    """In-memory identity collaborator with batched name lookups."""

    def __init__(self, profiles: Iterable[Profile] | None = None) -> None:
        self._profiles: dict[str, Profile] = {}
        self._lock = threading.Lock()
        self.batch_lookups = 0
        for profile in profiles or []:
            self.register(profile)

    def __len__(self) -> int:
        return len(self._profiles)

    def register(self, profile: Profile) -> Profile:
        if not profile.id.strip():
            raise ValidationFailed("Profile id is required")
        with self._lock:
            self._profiles[profile.id] = profile
        logger.debug("directory.profile.registered id=%s role=%s", profile.id, profile.role.value)
        return profile

    def get(self, profile_id: str) -> Profile | None:
        return self._profiles.get(profile_id)

    def actor(self, profile_id: str) -> Actor:
        profile = self.get(profile_id)
        if profile is None:
            raise NotFound(f"Unknown actor {profile_id}")
        return profile.as_actor()

    def display_names(self, profile_ids: Iterable[str]) -> dict[str, str]:
        """Resolve names for a set of ids in one lookup; unknown ids map to ``Unknown``."""

        wanted = set(profile_ids)
        with self._lock:
            self.batch_lookups += 1
            return {
                profile_id: (self._profiles[profile_id].name if profile_id in self._profiles else UNKNOWN_DISPLAY_NAME)
                for profile_id in wanted
            }

    def staff(self) -> list[Profile]:
        return [profile for profile in self._profiles.values() if profile.role is not Role.SUBMITTER]


def load_directory(path: str | Path) -> ProfileDirectory:
    """Load a roster of profiles from YAML; return an empty directory if missing."""

    roster_path = Path(path)
    if not roster_path.exists():
        return ProfileDirectory()

    data = yaml.safe_load(roster_path.read_text(encoding="utf-8")) or []
    profiles: list[Profile] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        profile_id = str(item.get("id", "")).strip()
        name = str(item.get("name", "")).strip()
        if not profile_id or not name:
            continue
        try:
            role = Role.parse(item.get("role", Role.SUBMITTER))
        except ValidationFailed:
            logger.warning("directory.load.invalid_role id=%s role=%s", profile_id, item.get("role"))
            continue
        email = item.get("email")
        hub_id = item.get("hub_id")
        profiles.append(
            Profile(
                id=profile_id,
                name=name,
                role=role,
                email=str(email).strip() if email else None,
                hub_id=str(hub_id).strip() if hub_id else None,
            )
        )
    logger.info("directory.loaded path=%s profiles=%s", roster_path, len(profiles))
    return ProfileDirectory(profiles)


__all__ = ["Profile", "ProfileDirectory", "UNKNOWN_DISPLAY_NAME", "load_directory"]
