import asyncio
import json
from urllib.parse import parse_qs

import guildlink.discord_api as discord_api
from guildlink.core import CoreCharacter
from guildlink.discord_api import (
    Channel,
    DiscordGuildClient,
    Member,
    PermissionOverwrite,
    RemoteError,
    format_nickname,
)
from tests.fakes import ScriptedGateway, make_config

BASE = "https://discord.test/api"


def make_client(**config_overrides):
    gateway = ScriptedGateway()
    client = DiscordGuildClient(make_config(**config_overrides), gateway, base_url=BASE)
    return client, gateway


def member_payload(user_id, roles=(), bot=False, nick=None):
    return {
        "user": {"id": str(user_id), "username": f"user{user_id}", "discriminator": "0", "bot": bot},
        "roles": [str(r) for r in roles],
        "nick": nick,
    }


def test_list_all_members_paginates_and_skips_bots(monkeypatch):
    monkeypatch.setattr(discord_api, "MEMBERS_PAGE_LIMIT", 2)
    client, gateway = make_client()
    gateway.queue(200, json.dumps([member_payload(1, [10]), member_payload(2, bot=True)]))
    gateway.queue(200, json.dumps([member_payload(3)]))

    members = asyncio.run(client.list_all_members())

    assert sorted(members) == [1, 3]
    assert members[1].roles == frozenset({10})
    urls = [call[1] for call in gateway.calls]
    assert urls == [
        f"{BASE}/guilds/42/members?limit=2&after=0",
        f"{BASE}/guilds/42/members?limit=2&after=2",
    ]


def test_list_all_members_keeps_pages_read_before_a_failure(monkeypatch):
    monkeypatch.setattr(discord_api, "MEMBERS_PAGE_LIMIT", 2)
    client, gateway = make_client()
    gateway.queue(200, json.dumps([member_payload(1), member_payload(2)]))
    gateway.queue(500, '{"message": "internal"}')

    members = asyncio.run(client.list_all_members())

    assert sorted(members) == [1, 2]


def test_kick_unknown_member_is_classified():
    client, gateway = make_client()
    gateway.queue(404, '{"message": "Unknown Member", "code": 10007}')

    assert asyncio.run(client.kick_member(5)) is False
    assert client.last_request_error == RemoteError.UNKNOWN_MEMBER
    assert gateway.calls[0][0] == "DELETE"
    assert gateway.calls[0][2]["Authorization"] == "Bot bot-secret"


def test_other_errors_are_not_classified():
    client, gateway = make_client()
    gateway.queue(404, '{"message": "Unknown Guild", "code": 10004}')

    assert asyncio.run(client.get_member(5)) is None
    assert client.last_request_error is None


def test_add_member_banned():
    client, gateway = make_client()
    gateway.queue(403, '{"message": "banned", "code": 40007}')

    assert asyncio.run(client.add_member(5, "user-token")) is False
    assert client.last_request_error == RemoteError.BANNED
    method, url, _headers, body = gateway.calls[0]
    assert (method, url) == ("PUT", f"{BASE}/guilds/42/members/5")
    assert json.loads(body) == {"access_token": "user-token"}


def test_get_member_rejects_incomplete_payload():
    client, gateway = make_client()
    gateway.queue(200, '{"user": {"id": "5"}}')

    assert asyncio.run(client.get_member(5)) is None


def test_get_member_decodes_roles_and_nick():
    client, gateway = make_client()
    gateway.queue(200, json.dumps(member_payload(5, [1, 2], nick="Bob")))

    member = asyncio.run(client.get_member(5))

    assert member == Member.from_payload(member_payload(5, [1, 2], nick="Bob"))
    assert member.id == 5
    assert member.nick == "Bob"


def test_set_nickname_skips_unchanged_nickname():
    client, gateway = make_client()
    character = CoreCharacter(1, 1, "Alice", "CORP")

    assert asyncio.run(client.set_nickname(5, character, "Alice [CORP]")) is True
    assert gateway.calls == []


def test_set_nickname_truncates():
    client, gateway = make_client()
    character = CoreCharacter(1, 1, "A" * 40, "CORP")

    assert asyncio.run(client.set_nickname(5, character)) is True
    nick = json.loads(gateway.calls[0][3])["nick"]
    assert nick == "A" * 32


def test_format_nickname_falls_back_on_bad_template():
    character = CoreCharacter(1, 1, "Alice", "CORP")

    assert format_nickname(character, "{name} <{alliance}>") == "Alice [CORP]"
    assert format_nickname(character, "[{ticker}] {name}") == "[CORP] Alice"


def test_channel_payload_and_voice_type():
    channel = Channel.from_payload(
        {
            "id": "100",
            "type": 2,
            "permission_overwrites": [{"id": "7", "type": 0, "allow": "0", "deny": "1024"}],
        }
    )

    assert channel.is_voice
    assert channel.permission_overwrites == (PermissionOverwrite(7, 0, "0", "1024"),)


def test_update_channel_permissions_sends_complete_list():
    client, gateway = make_client()
    overwrites = [PermissionOverwrite(7, 0, "0", "1024"), PermissionOverwrite(5, 1, "1024")]

    assert asyncio.run(client.update_channel_permissions(100, overwrites)) is True
    method, url, headers, body = gateway.calls[0]
    assert (method, url) == ("PATCH", f"{BASE}/channels/100")
    assert headers["Content-Type"] == "application/json"
    assert json.loads(body) == {
        "permission_overwrites": [
            {"id": "7", "type": 0, "allow": "0", "deny": "1024"},
            {"id": "5", "type": 1, "allow": "1024", "deny": "0"},
        ]
    }


def test_oauth_exchange_and_user_lookup():
    client, gateway = make_client()
    gateway.queue(200, '{"access_token": "user-token", "token_type": "Bearer"}')
    gateway.queue(200, '{"user": {"id": "77", "username": "alice"}}')

    async def run():
        token = await client.exchange_code("the-code")
        return token, await client.get_oauth_user(token)

    token, user = asyncio.run(run())

    assert token == "user-token"
    assert (user.id, user.username, user.discriminator) == (77, "alice", "0")
    form = parse_qs(gateway.calls[0][3])
    assert form["grant_type"] == ["authorization_code"]
    assert form["code"] == ["the-code"]
    assert form["client_secret"] == ["client-secret"]
    assert gateway.calls[1][2] == {"Authorization": "Bearer user-token"}


def test_oauth_user_without_id_is_rejected():
    client, gateway = make_client()
    gateway.queue(200, '{"user": {"username": "alice"}}')

    assert asyncio.run(client.get_oauth_user("t")) is None
