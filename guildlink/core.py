from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Protocol

USERNAME_NA = "n/a"


class MemberStatus(str, Enum):
    PENDING = "Pending"
    ACTIVE = "Active"
    NONMEMBER = "NonMember"


@dataclass(frozen=True)
class CoreCharacter:
    id: int
    player_id: int
    name: str = ""
    corporation_ticker: str = ""


@dataclass(frozen=True)
class CoreGroup:
    identifier: int
    name: str = ""


@dataclass
class ServiceAccountData:
    character_id: int
    username: str
    password: Optional[str] = None
    email: Optional[str] = None
    status: Optional[str] = None


def group_ids(groups: Iterable[CoreGroup]) -> set[int]:
    return {group.identifier for group in groups}


class CoreLike(Protocol):
    """What the sweep runner needs from the Core platform."""

    async def main_character(self, player_id: int) -> Optional[CoreCharacter]: ...

    async def groups(self, player_id: int) -> list[CoreGroup]: ...
