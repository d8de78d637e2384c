from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Set, Tuple

import discord

from .config import ServiceConfig
from .core import CoreCharacter, CoreGroup, MemberStatus, group_ids
from .discord_api import (
    OVERWRITE_TYPE_MEMBER,
    Channel,
    Member,
    PermissionOverwrite,
    RemoteError,
    format_nickname,
)
from .models import AccountStore

LOGGER = logging.getLogger(__name__)


class GuildClientLike(Protocol):
    last_request_error: Optional[RemoteError]

    async def kick_member(self, user_id: int) -> bool: ...

    async def get_member(self, user_id: int) -> Optional[Member]: ...

    async def add_role(self, user_id: int, role_id: int) -> bool: ...

    async def remove_role(self, user_id: int, role_id: int) -> bool: ...

    async def get_channel(self, channel_id: int) -> Optional[Channel]: ...

    async def update_channel_permissions(
        self, channel_id: int, overwrites: Iterable[PermissionOverwrite]
    ) -> bool: ...

    async def set_nickname(
        self,
        user_id: int,
        character: CoreCharacter,
        current_nickname: Optional[str] = None,
    ) -> bool: ...

    async def list_all_members(self) -> Dict[int, Member]: ...


class ReconciliationError(Exception):
    def __init__(self, player_id: int, failures: Iterable[str]):
        self.player_id = player_id
        self.failures = list(failures)
        super().__init__(f"player {player_id}: {' '.join(self.failures)}")


@dataclass
class SweepContext:
    """Discord state fetched once per sweep and shared by its account passes."""

    members: Dict[int, Member] = field(default_factory=dict)
    channels: Dict[int, Channel] = field(default_factory=dict)


@dataclass(frozen=True)
class RoleDiff:
    to_add: frozenset[int]
    to_remove: frozenset[int]

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


def entitled(configured_groups: Set[int], account_groups: Set[int]) -> bool:
    return bool(configured_groups & account_groups)


def compute_role_diff(
    member_role_ids: Iterable[int],
    account_group_ids: Set[int],
    role_config: Mapping[int, Set[int]],
) -> RoleDiff:
    """Roles to add and remove; roles missing from ``role_config`` are never touched."""
    current = set(member_role_ids)
    managed = set(role_config)
    wanted = {
        role_id
        for role_id, configured in role_config.items()
        if entitled(configured, account_group_ids)
    }
    return RoleDiff(
        to_add=frozenset(wanted - current),
        to_remove=frozenset((current & managed) - wanted),
    )


def member_channel_permissions(channel: Channel) -> int:
    permissions = discord.Permissions(view_channel=True)
    if channel.is_voice:
        permissions.connect = True
    return permissions.value


def has_member_overwrite(channel: Channel, user_id: int) -> bool:
    return any(
        o.type == OVERWRITE_TYPE_MEMBER and o.id == user_id
        for o in channel.permission_overwrites
    )


def compute_overwrites(
    channel: Channel, user_id: int, should_have: bool
) -> Optional[List[PermissionOverwrite]]:
    """Return the complete new overwrite list, or None if nothing changes.

    Discord replaces the whole collection on update, so the result always
    carries every other overwrite of the channel unchanged.
    """
    if has_member_overwrite(channel, user_id) == should_have:
        return None
    if should_have:
        return [
            *channel.permission_overwrites,
            PermissionOverwrite(
                id=user_id,
                type=OVERWRITE_TYPE_MEMBER,
                allow=str(member_channel_permissions(channel)),
                deny="0",
            ),
        ]
    return [
        o
        for o in channel.permission_overwrites
        if not (o.type == OVERWRITE_TYPE_MEMBER and o.id == user_id)
    ]


class ReconciliationEngine:
    def __init__(self, config: ServiceConfig, store: AccountStore, client: GuildClientLike):
        self.config = config
        self.store = store
        self.client = client

    def may_kick(self, discord_id: int) -> bool:
        return not self.config.disable_kicks and discord_id not in self.config.do_not_kick

    async def update_player_account(
        self,
        main_character: CoreCharacter,
        groups: Iterable[CoreGroup],
        ctx: SweepContext | None = None,
    ):
        """Bring one player's Discord state in line with their groups.

        Raises ReconciliationError when the pass failed; other players are
        not affected.
        """
        ctx = ctx if ctx is not None else SweepContext()
        player_id = main_character.player_id
        account_groups = group_ids(groups)

        member_data = self.store.get_member_data(player_id)
        if member_data is None:
            return
        character_id, discord_id = member_data
        if not discord_id:
            return

        if main_character.id == 0:
            await self._remove_without_main(player_id, discord_id, ctx)
            return

        if character_id != main_character.id:
            self.store.update_character_id(main_character)

        member = ctx.members.get(discord_id)
        if member is None:
            member = await self.client.get_member(discord_id)
            if member is None:
                if self.client.last_request_error == RemoteError.UNKNOWN_MEMBER:
                    LOGGER.info("%s is not a member of the server anymore", discord_id)
                    self.store.update_account_status(
                        MemberStatus.NONMEMBER, player_id=player_id
                    )
                    return
                raise ReconciliationError(player_id, ["Failed to read member roles."])

        if member.user.username and member.user.discriminator:
            self.store.update_member_data(
                player_id, member.user.username, member.user.discriminator
            )

        required = self.config.required_groups
        if required and not entitled(required, account_groups) and self.may_kick(discord_id):
            if not await self.client.kick_member(discord_id):
                raise ReconciliationError(player_id, ["Failed to kick."])
            LOGGER.info("Kicked %s (missing required group).", discord_id)
            self.store.update_account_status(MemberStatus.NONMEMBER, player_id=player_id)
            ctx.members.pop(discord_id, None)
            return

        roles, failures = await self.apply_role_diff(discord_id, member.roles, account_groups)
        failures.extend(await self._sync_channels(discord_id, account_groups, ctx))

        nick = member.nick
        if not member.roles & self.config.no_nickname_change:
            if await self.client.set_nickname(discord_id, main_character, member.nick):
                nick = format_nickname(main_character, self.config.nickname)
            else:
                failures.append("Failed to change nickname.")
        ctx.members[discord_id] = replace(member, roles=roles, nick=nick)

        if failures:
            raise ReconciliationError(player_id, failures)

    async def apply_role_diff(
        self, discord_id: int, current_roles: Iterable[int], account_groups: Set[int]
    ) -> Tuple[frozenset[int], List[str]]:
        diff = compute_role_diff(current_roles, account_groups, self.config.role_config)
        roles = set(current_roles)
        failures: List[str] = []
        for role_id in sorted(diff.to_remove):
            if await self.client.remove_role(discord_id, role_id):
                roles.discard(role_id)
                LOGGER.info("Removed role %s from %s.", role_id, discord_id)
            else:
                failures.append(f"Failed to remove role {role_id}.")
        for role_id in sorted(diff.to_add):
            if await self.client.add_role(discord_id, role_id):
                roles.add(role_id)
                LOGGER.info("Added role %s to %s.", role_id, discord_id)
            else:
                failures.append(f"Failed to add role {role_id}.")
        return frozenset(roles), failures

    async def _sync_channels(
        self, discord_id: int, account_groups: Set[int], ctx: SweepContext
    ) -> List[str]:
        failures: List[str] = []
        for channel_id, configured in self.config.channel_config.items():
            channel = ctx.channels.get(channel_id)
            if channel is None:
                channel = await self.client.get_channel(channel_id)
                if channel is None:
                    failures.append(f"Failed to read channel {channel_id}.")
                    continue
                ctx.channels[channel_id] = channel
            should_have = entitled(configured, account_groups)
            overwrites = compute_overwrites(channel, discord_id, should_have)
            if overwrites is None:
                continue
            # Any write makes the cached overwrite list stale.
            ctx.channels.pop(channel_id, None)
            if await self.client.update_channel_permissions(channel_id, overwrites):
                LOGGER.info(
                    "%s %s channel %s.",
                    "Added" if should_have else "Removed",
                    discord_id,
                    channel_id,
                )
            else:
                failures.append(f"Failed to update channel {channel_id}.")
        return failures

    async def _remove_without_main(self, player_id: int, discord_id: int, ctx: SweepContext):
        if self.may_kick(discord_id):
            if await self.client.kick_member(discord_id):
                LOGGER.info("Kicked %s (no main).", discord_id)
            elif self.client.last_request_error != RemoteError.UNKNOWN_MEMBER:
                raise ReconciliationError(player_id, ["Failed to kick."])
            ctx.members.pop(discord_id, None)
        self.store.delete_account(player_id)

    async def get_all_player_accounts(self, ctx: SweepContext) -> List[int]:
        """Sweep the member list and return the Active player queue.

        Members without a local account are kicked, or stripped of every
        managed role when kicks are disabled.
        """
        members = await self.client.list_all_members()
        ctx.members = dict(members)
        ctx.channels = {}
        discord_ids = list(members)

        # Members that joined by other means but have an account.
        self.store.update_account_status(MemberStatus.ACTIVE, discord_ids=discord_ids)

        known = self.store.get_discord_ids(discord_ids)
        for discord_id in discord_ids:
            if discord_id in known or discord_id in self.config.do_not_kick:
                continue
            if not self.config.disable_kicks:
                if await self.client.kick_member(discord_id):
                    LOGGER.info("Kicked %s (no service account).", discord_id)
                    ctx.members.pop(discord_id, None)
                continue
            member = members[discord_id]
            roles, failures = await self.apply_role_diff(discord_id, member.roles, set())
            ctx.members[discord_id] = replace(member, roles=roles)
            for failure in failures:
                LOGGER.warning("%s (%s has no service account)", failure, discord_id)

        return self.store.fetch_active_player_ids()
