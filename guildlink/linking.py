from __future__ import annotations

import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Any, MutableMapping, Optional
from urllib.parse import quote, urlencode

from .config import ServiceConfig
from .core import CoreCharacter, MemberStatus
from .discord_api import DiscordGuildClient, RemoteError
from .models import AccountStore, AccountStoreError

LOGGER = logging.getLogger(__name__)

OAUTH_SCOPE = "identify guilds.join"
STATE_BYTES = 16

MSG_STATE_MISMATCH = "Failed: OAuth state mismatch."
MSG_MISSING_CODE = "Failed: Missing OAuth code."
MSG_NO_TOKEN = "Failed: No access token."
MSG_NO_USER = "Failed: Could not retrieve Discord user id."
MSG_DELETE_OTHERS = "Failed: Could not delete this Discord user from other accounts."
MSG_FETCH_ACCOUNT = "Failed: Could not fetch local service account."
MSG_CREATE_ACCOUNT = "Failed: Could not create local service account."
MSG_UPDATE_ACCOUNT = "Failed: Could not update local service account."
MSG_BANNED = "Failed: You are banned on this Discord server."
MSG_ADD_MEMBER = "Failed: Could not add member to Discord server."
MSG_NICKNAME = "Invitation successful, but failed to set nickname."
MSG_SUCCESS = "Successfully added member to server."


@dataclass(frozen=True)
class LinkResult:
    success: bool
    message: str


def redirect_location(service_id: int, message: str) -> str:
    return f"/#Service/{service_id}/?message={quote(message, safe='')}"


class LinkingFlow:
    """OAuth2 authorization-code flow that links a Discord user to a player."""

    def __init__(
        self,
        config: ServiceConfig,
        store: AccountStore,
        client: DiscordGuildClient,
        base_url: Optional[str] = None,
    ):
        self.config = config
        self.store = store
        self.client = client
        self.base_url = base_url or client.base_url

    def authorize_url(self, session: MutableMapping[str, Any]) -> str:
        state = secrets.token_hex(STATE_BYTES)
        session[self.config.session_state_key] = state
        query = urlencode(
            {
                "client_id": self.config.oauth_client_id,
                "redirect_uri": self.config.oauth_redirect_uri,
                "response_type": "code",
                "scope": OAUTH_SCOPE,
                "state": state,
            },
            quote_via=quote,
        )
        return f"{self.base_url}/oauth2/authorize?{query}"

    def _state_matches(self, session: MutableMapping[str, Any], state: Optional[str]) -> bool:
        expected = session.pop(self.config.session_state_key, None)
        if not state or not expected:
            return False
        return hmac.compare_digest(str(state).encode(), str(expected).encode())

    async def callback(
        self,
        character: CoreCharacter,
        session: MutableMapping[str, Any],
        state: Optional[str],
        code: Optional[str],
    ) -> LinkResult:
        if not self._state_matches(session, state):
            return LinkResult(False, MSG_STATE_MISMATCH)
        if not code:
            return LinkResult(False, MSG_MISSING_CODE)

        access_token = await self.client.exchange_code(code)
        if not access_token:
            return LinkResult(False, MSG_NO_TOKEN)

        user = await self.client.get_oauth_user(access_token)
        if user is None:
            return LinkResult(False, MSG_NO_USER)

        # One Discord user may only be linked to one player.
        if not self.store.delete_other_accounts(user.id, character.player_id):
            return LinkResult(False, MSG_DELETE_OTHERS)

        try:
            exists = self.store.account_exists(character.player_id)
        except AccountStoreError:
            return LinkResult(False, MSG_FETCH_ACCOUNT)
        if not exists:
            try:
                self.store.create_account(
                    character.id, character.player_id, MemberStatus.ACTIVE, user.username
                )
            except AccountStoreError:
                return LinkResult(False, MSG_CREATE_ACCOUNT)

        # Also updates the character ID, the main may have changed.
        if not self.store.update_account(
            character, user.id, user.username, user.discriminator
        ):
            return LinkResult(False, MSG_UPDATE_ACCOUNT)

        if not await self.client.add_member(user.id, access_token):
            if self.client.last_request_error == RemoteError.BANNED:
                return LinkResult(False, MSG_BANNED)
            return LinkResult(False, MSG_ADD_MEMBER)

        if not await self.client.set_nickname(user.id, character):
            return LinkResult(True, MSG_NICKNAME)

        LOGGER.info("Linked Discord user %s to player %s", user.id, character.player_id)
        return LinkResult(True, MSG_SUCCESS)
