import asyncio
from urllib.parse import parse_qs, urlparse

from guildlink.core import CoreCharacter
from guildlink.discord_api import DiscordGuildClient
from guildlink.linking import (
    MSG_BANNED,
    MSG_MISSING_CODE,
    MSG_NICKNAME,
    MSG_NO_TOKEN,
    MSG_STATE_MISMATCH,
    MSG_SUCCESS,
    LinkingFlow,
    redirect_location,
)
from tests.fakes import ScriptedGateway, link_account, make_config

CHARACTER = CoreCharacter(10, 1, "Alice", "CORP")
STATE_KEY = "__guildlink_7_state"


def make_flow(store):
    config = make_config()
    gateway = ScriptedGateway()
    client = DiscordGuildClient(config, gateway, base_url="https://discord.test/api")
    return LinkingFlow(config, store, client, base_url="https://discord.test/api"), gateway


def queue_oauth(gateway, user_id="777"):
    gateway.queue(200, '{"access_token": "user-token"}')
    gateway.queue(200, '{"user": {"id": "%s", "username": "alice", "discriminator": "0"}}' % user_id)


def test_authorize_url_stores_state():
    flow, _gateway = make_flow(store=None)
    session = {}

    url = flow.authorize_url(session)

    parsed = urlparse(url)
    params = parse_qs(parsed.query)
    assert parsed.path == "/api/oauth2/authorize"
    assert "scope=identify%20guilds.join" in parsed.query
    assert params["client_id"] == ["client-1"]
    assert params["redirect_uri"] == ["https://core.example/plugin/7/callback"]
    assert params["response_type"] == ["code"]
    assert params["state"] == [session[STATE_KEY]]
    assert len(session[STATE_KEY]) == 32


def test_state_mismatch_is_rejected_and_state_cleared(store):
    flow, gateway = make_flow(store)
    session = {STATE_KEY: "expected"}

    result = asyncio.run(flow.callback(CHARACTER, session, "forged", "code"))

    assert result.message == MSG_STATE_MISMATCH
    assert STATE_KEY not in session
    assert gateway.calls == []


def test_missing_state_in_session_is_rejected(store):
    flow, _gateway = make_flow(store)

    result = asyncio.run(flow.callback(CHARACTER, {}, "anything", "code"))

    assert result.message == MSG_STATE_MISMATCH


def test_missing_code(store):
    flow, _gateway = make_flow(store)

    result = asyncio.run(flow.callback(CHARACTER, {STATE_KEY: "s"}, "s", ""))

    assert result.message == MSG_MISSING_CODE


def test_failed_token_exchange(store):
    flow, gateway = make_flow(store)
    gateway.queue(400, '{"error": "invalid_grant"}')

    result = asyncio.run(flow.callback(CHARACTER, {STATE_KEY: "s"}, "s", "code"))

    assert result.message == MSG_NO_TOKEN


def test_successful_link_creates_account(store):
    flow, gateway = make_flow(store)
    queue_oauth(gateway)
    gateway.queue(201, "")
    gateway.queue(200, "{}")

    result = asyncio.run(flow.callback(CHARACTER, {STATE_KEY: "s"}, "s", "code"))

    assert result.success
    assert result.message == MSG_SUCCESS
    assert store.get_member_data(1) == (10, 777)
    assert store.fetch_player_account([10], 1).status == "Active"
    assert [c[0] for c in gateway.calls] == ["POST", "GET", "PUT", "PATCH"]


def test_link_moves_discord_user_away_from_other_player(store):
    link_account(store, 2, 777)
    flow, gateway = make_flow(store)
    queue_oauth(gateway)
    gateway.queue(204, "")
    gateway.queue(200, "{}")

    asyncio.run(flow.callback(CHARACTER, {STATE_KEY: "s"}, "s", "code"))

    assert store.get_member_data(2) is None
    assert store.get_member_data(1) == (10, 777)


def test_banned_user(store):
    flow, gateway = make_flow(store)
    queue_oauth(gateway)
    gateway.queue(403, '{"message": "banned", "code": 40007}')

    result = asyncio.run(flow.callback(CHARACTER, {STATE_KEY: "s"}, "s", "code"))

    assert not result.success
    assert result.message == MSG_BANNED
    assert store.get_member_data(1) == (10, 777)


def test_nickname_failure_is_partial_success(store):
    flow, gateway = make_flow(store)
    queue_oauth(gateway)
    gateway.queue(201, "")
    gateway.queue(403, '{"message": "Missing Permissions", "code": 50013}')

    result = asyncio.run(flow.callback(CHARACTER, {STATE_KEY: "s"}, "s", "code"))

    assert result.success
    assert result.message == MSG_NICKNAME


def test_authorize_url_follows_the_client_base_url():
    config = make_config()
    client = DiscordGuildClient(config, ScriptedGateway(), base_url="https://elsewhere.test/api")
    flow = LinkingFlow(config, None, client)

    url = flow.authorize_url({})

    assert url.startswith("https://elsewhere.test/api/oauth2/authorize?")


def test_redirect_location_encodes_message():
    assert (
        redirect_location(7, MSG_SUCCESS)
        == "/#Service/7/?message=Successfully%20added%20member%20to%20server."
    )
