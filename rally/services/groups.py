"""
rally.services.groups — Group Eligibility & Membership
=======================================================

Groups and their rosters belong to another system.  The engine only asks
three questions through :class:`GroupDirectory`: may this group own
challenges, is this user one of its members, and who are its members
(for auto-enrolment when a challenge activates).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Protocol


class GroupDirectory(Protocol):
    def is_eligible(self, group_id: str) -> bool: ...

    def is_member(self, group_id: str, user_id: str) -> bool: ...

    def members(self, group_id: str) -> list[str]: ...


class StaticGroupDirectory:
    """Directory backed by fixed lists.

    An empty *eligible_groups* allows every group.  Groups without an
    entry in *members* accept any user but have nobody to auto-enrol.
    """

    def __init__(
        self,
        eligible_groups: Iterable[str] = (),
        members: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        self.eligible_groups = frozenset(eligible_groups)
        self.rosters = {gid: frozenset(users) for gid, users in (members or {}).items()}

    def is_eligible(self, group_id: str) -> bool:
        return not self.eligible_groups or group_id in self.eligible_groups

    def is_member(self, group_id: str, user_id: str) -> bool:
        roster = self.rosters.get(group_id)
        return roster is None or user_id in roster

    def members(self, group_id: str) -> list[str]:
        return sorted(self.rosters.get(group_id, ()))
