from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlencode

import discord

from .config import DEFAULT_NICKNAME, ServiceConfig
from .core import CoreCharacter
from .gateway import RateLimitedGateway, RemoteError

LOGGER = logging.getLogger(__name__)

DISCORD_API_BASE = "https://discord.com/api"
MEMBERS_PAGE_LIMIT = 500
NICKNAME_MAX_LENGTH = 32

OVERWRITE_TYPE_MEMBER = 1

VOICE_CHANNEL_TYPES = frozenset(
    {discord.ChannelType.voice.value, discord.ChannelType.stage_voice.value}
)


class DecodeError(ValueError):
    pass


def _require(data: Any, key: str, kind: str) -> Any:
    if not isinstance(data, dict):
        raise DecodeError(f"{kind} payload is not an object")
    if data.get(key) is None:
        raise DecodeError(f"{kind} payload is missing '{key}'")
    return data[key]


def _snowflake(value: Any, kind: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"{kind} id {value!r} is not a snowflake") from exc


@dataclass(frozen=True)
class DiscordUser:
    id: int
    username: str = ""
    discriminator: str = ""
    bot: bool = False

    @classmethod
    def from_payload(cls, data: Any) -> "DiscordUser":
        user_id = _snowflake(_require(data, "id", "user"), "user")
        return cls(
            id=user_id,
            username=str(data.get("username") or ""),
            discriminator=str(data.get("discriminator") or ""),
            bot=bool(data.get("bot", False)),
        )


@dataclass(frozen=True)
class Member:
    user: DiscordUser
    roles: frozenset[int] = frozenset()
    nick: Optional[str] = None

    @property
    def id(self) -> int:
        return self.user.id

    @classmethod
    def from_payload(cls, data: Any) -> "Member":
        user = DiscordUser.from_payload(_require(data, "user", "member"))
        roles = _require(data, "roles", "member")
        if not isinstance(roles, list):
            raise DecodeError("member 'roles' is not a list")
        nick = data.get("nick")
        return cls(
            user=user,
            roles=frozenset(_snowflake(role, "role") for role in roles),
            nick=str(nick) if nick is not None else None,
        )


@dataclass(frozen=True)
class PermissionOverwrite:
    id: int
    type: int
    allow: str = "0"
    deny: str = "0"

    @classmethod
    def from_payload(cls, data: Any) -> "PermissionOverwrite":
        overwrite_id = _snowflake(_require(data, "id", "overwrite"), "overwrite")
        overwrite_type = _require(data, "type", "overwrite")
        try:
            overwrite_type = int(overwrite_type)
        except (TypeError, ValueError) as exc:
            raise DecodeError(f"overwrite type {overwrite_type!r} is invalid") from exc
        return cls(
            id=overwrite_id,
            type=overwrite_type,
            allow=str(data.get("allow") or "0"),
            deny=str(data.get("deny") or "0"),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type,
            "allow": self.allow,
            "deny": self.deny,
        }


@dataclass(frozen=True)
class Channel:
    id: int
    type: int
    permission_overwrites: tuple[PermissionOverwrite, ...] = field(default_factory=tuple)

    @property
    def is_voice(self) -> bool:
        return self.type in VOICE_CHANNEL_TYPES

    @classmethod
    def from_payload(cls, data: Any) -> "Channel":
        channel_id = _snowflake(_require(data, "id", "channel"), "channel")
        channel_type = _require(data, "type", "channel")
        if isinstance(channel_type, bool) or not isinstance(channel_type, int):
            raise DecodeError(f"channel type {channel_type!r} is invalid")
        raw_overwrites = data.get("permission_overwrites") or []
        if not isinstance(raw_overwrites, list):
            raise DecodeError("channel 'permission_overwrites' is not a list")
        return cls(
            id=channel_id,
            type=channel_type,
            permission_overwrites=tuple(
                PermissionOverwrite.from_payload(item) for item in raw_overwrites
            ),
        )


@dataclass(frozen=True)
class OAuthUser:
    id: int
    username: str
    discriminator: str


def format_nickname(character: CoreCharacter, template: str = DEFAULT_NICKNAME) -> str:
    values = {"name": character.name, "ticker": character.corporation_ticker}
    try:
        nickname = template.format(**values)
    except (KeyError, IndexError, ValueError) as exc:
        LOGGER.warning("Invalid nickname template %r: %s", template, exc)
        nickname = DEFAULT_NICKNAME.format(**values)
    return nickname[:NICKNAME_MAX_LENGTH]


def _decode_json(body: Optional[str]) -> Any:
    if body is None:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


class DiscordGuildClient:
    """Typed Discord REST operations for the configured guild."""

    def __init__(
        self,
        config: ServiceConfig,
        gateway: RateLimitedGateway | None = None,
        base_url: str = DISCORD_API_BASE,
    ):
        self.config = config
        self.gateway = gateway or RateLimitedGateway()
        self.base_url = base_url
        self.last_request_error: Optional[RemoteError] = None

    async def close(self):
        await self.gateway.close()

    def _guild_url(self, path: str = "") -> str:
        return f"{self.base_url}/guilds/{self.config.server_id}{path}"

    def _json_headers(self) -> Dict[str, str]:
        return {**self.config.auth_header, "Content-Type": "application/json"}

    def _classify(self, status: int, error: RemoteError):
        last = self.gateway.last_error
        if last.status == status and last.code is error:
            self.last_request_error = error

    # https://discord.com/developers/docs/resources/guild#remove-guild-member - KICK_MEMBERS
    async def kick_member(self, user_id: int) -> bool:
        self.last_request_error = None
        result = await self.gateway.api_request(
            "DELETE", self._guild_url(f"/members/{user_id}"), self.config.auth_header
        )
        if result is None:
            self._classify(404, RemoteError.UNKNOWN_MEMBER)
            return False
        return True

    async def get_member(self, user_id: int) -> Optional[Member]:
        self.last_request_error = None
        body = await self.gateway.api_request(
            "GET", self._guild_url(f"/members/{user_id}"), self.config.auth_header
        )
        if body is None:
            self._classify(404, RemoteError.UNKNOWN_MEMBER)
            return None
        try:
            return Member.from_payload(_decode_json(body))
        except DecodeError as exc:
            LOGGER.error("Unexpected member payload for %s: %s", user_id, exc)
            return None

    # https://discord.com/developers/docs/resources/guild#add-guild-member-role - MANAGE_ROLES
    async def add_role(self, user_id: int, role_id: int) -> bool:
        self.last_request_error = None
        result = await self.gateway.api_request(
            "PUT",
            self._guild_url(f"/members/{user_id}/roles/{role_id}"),
            self.config.auth_header,
        )
        return result is not None

    async def remove_role(self, user_id: int, role_id: int) -> bool:
        self.last_request_error = None
        result = await self.gateway.api_request(
            "DELETE",
            self._guild_url(f"/members/{user_id}/roles/{role_id}"),
            self.config.auth_header,
        )
        return result is not None

    # https://discord.com/developers/docs/resources/channel#get-channel - MANAGE_CHANNELS
    async def get_channel(self, channel_id: int) -> Optional[Channel]:
        self.last_request_error = None
        body = await self.gateway.api_request(
            "GET", f"{self.base_url}/channels/{channel_id}", self.config.auth_header
        )
        if body is None:
            return None
        try:
            return Channel.from_payload(_decode_json(body))
        except DecodeError as exc:
            LOGGER.error("Unexpected channel payload for %s: %s", channel_id, exc)
            return None

    async def update_channel_permissions(
        self, channel_id: int, overwrites: Iterable[PermissionOverwrite]
    ) -> bool:
        """Replace the whole overwrite list of a channel."""
        self.last_request_error = None
        payload = {"permission_overwrites": [o.to_payload() for o in overwrites]}
        result = await self.gateway.api_request(
            "PATCH",
            f"{self.base_url}/channels/{channel_id}",
            self._json_headers(),
            json.dumps(payload),
        )
        return result is not None

    # https://discord.com/developers/docs/resources/guild#modify-guild-member - MANAGE_NICKNAMES
    async def set_nickname(
        self,
        user_id: int,
        character: CoreCharacter,
        current_nickname: Optional[str] = None,
    ) -> bool:
        self.last_request_error = None
        nickname = format_nickname(character, self.config.nickname)
        if current_nickname == nickname:
            return True
        result = await self.gateway.api_request(
            "PATCH",
            self._guild_url(f"/members/{user_id}"),
            self._json_headers(),
            json.dumps({"nick": nickname}),
        )
        if result is not None:
            LOGGER.info("Changed nickname of %s to %s", user_id, nickname)
        return result is not None

    # https://discord.com/developers/docs/resources/guild#list-guild-members - Server Members Intent
    async def list_all_members(self) -> Dict[int, Member]:
        self.last_request_error = None
        members: Dict[int, Member] = {}
        after = 0
        while True:
            body = await self.gateway.api_request(
                "GET",
                self._guild_url(f"/members?limit={MEMBERS_PAGE_LIMIT}&after={after}"),
                self.config.auth_header,
            )
            page = _decode_json(body)
            if not isinstance(page, list):
                if body is not None:
                    LOGGER.warning("Member list page after %s is not a list", after)
                break
            try:
                decoded = [Member.from_payload(item) for item in page]
            except DecodeError as exc:
                LOGGER.warning(
                    "Stopping member listing after %s, undecodable member: %s", after, exc
                )
                break
            for member in decoded:
                if not member.user.bot:
                    members[member.id] = member
                after = max(after, member.id)
            if len(page) < MEMBERS_PAGE_LIMIT:
                break
        return members

    async def exchange_code(self, code: str) -> Optional[str]:
        self.last_request_error = None
        body = await self.gateway.send_request(
            "POST",
            f"{self.base_url}/oauth2/token",
            {"Content-Type": "application/x-www-form-urlencoded"},
            urlencode(
                {
                    "client_id": self.config.oauth_client_id,
                    "client_secret": self.config.oauth_client_secret,
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.config.oauth_redirect_uri,
                }
            ),
        )
        token = _decode_json(body)
        if not isinstance(token, dict):
            return None
        access_token = token.get("access_token")
        return str(access_token) if access_token else None

    async def get_oauth_user(self, access_token: str) -> Optional[OAuthUser]:
        self.last_request_error = None
        body = await self.gateway.send_request(
            "GET",
            f"{self.base_url}/oauth2/@me",
            {"Authorization": f"Bearer {access_token}"},
        )
        info = _decode_json(body)
        user = info.get("user") if isinstance(info, dict) else None
        if not isinstance(user, dict) or not user.get("id") or not user.get("username"):
            return None
        try:
            user_id = _snowflake(user["id"], "user")
        except DecodeError:
            return None
        return OAuthUser(
            id=user_id,
            username=str(user["username"]),
            discriminator=str(user.get("discriminator") or "0"),
        )

    # https://discord.com/developers/docs/resources/guild#add-guild-member -
    #     CREATE_INSTANT_INVITE + user token with "guilds.join" scope
    async def add_member(self, user_id: int, access_token: str) -> bool:
        self.last_request_error = None
        result = await self.gateway.api_request(
            "PUT",
            self._guild_url(f"/members/{user_id}"),
            self._json_headers(),
            json.dumps({"access_token": access_token}),
        )
        if result is None:
            self._classify(403, RemoteError.BANNED)
            return False
        return True
