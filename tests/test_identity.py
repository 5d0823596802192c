from __future__ import annotations

import pytest

from complaintdesk.errors import NotFound, ValidationFailed
from complaintdesk.identity import Profile, ProfileDirectory, load_directory
from complaintdesk.models import Role


def test_load_directory_from_yaml(tmp_path) -> None:
    roster = tmp_path / "directory.yaml"
    roster.write_text(
        """
- id: student-1
  name: Asha Menon
  role: submitter
  hub_id: kochi
- id: reviewer-1
  name: Nadia Reviewer
  role: Reviewer
  email: nadia@example.com
- id: broken
  name: Nobody
  role: janitor
- name: Missing Id
""",
        encoding="utf-8",
    )

    directory = load_directory(roster)

    assert len(directory) == 2
    assert directory.get("student-1").hub_id == "kochi"
    assert directory.actor("reviewer-1").role is Role.REVIEWER
    assert [profile.id for profile in directory.staff()] == ["reviewer-1"]


def test_missing_roster_gives_empty_directory(tmp_path) -> None:
    assert len(load_directory(tmp_path / "absent.yaml")) == 0


def test_display_names_batches_and_marks_unknown() -> None:
    directory = ProfileDirectory([Profile(id="a", name="Alpha", role=Role.SUBMITTER)])

    names = directory.display_names(["a", "ghost", "a"])

    assert names == {"a": "Alpha", "ghost": "Unknown"}
    assert directory.batch_lookups == 1


def test_unknown_actor_and_blank_profile() -> None:
    directory = ProfileDirectory()
    with pytest.raises(NotFound):
        directory.actor("nobody")
    with pytest.raises(ValidationFailed):
        directory.register(Profile(id="  ", name="Blank", role=Role.SUBMITTER))
