from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional

from peewee import Database

from .config import ServiceConfig
from .core import (
    USERNAME_NA,
    CoreCharacter,
    CoreGroup,
    MemberStatus,
    ServiceAccountData,
)
from .discord_api import DiscordGuildClient
from .linking import LinkingFlow, redirect_location
from .models import AccountStore, AccountStoreError, init_account_db
from .reconcile import ReconciliationEngine, ReconciliationError, SweepContext

LOGGER = logging.getLogger(__name__)


@dataclass
class Response:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    @classmethod
    def redirect(cls, location: str) -> "Response":
        return cls(status=302, headers={"Location": location})


class DiscordService:
    """Entry points the host platform calls for this Discord integration."""

    def __init__(
        self,
        config: ServiceConfig,
        store: AccountStore,
        client: DiscordGuildClient,
    ):
        self.config = config
        self.store = store
        self.client = client
        self.engine = ReconciliationEngine(config, store, client)
        self.linking = LinkingFlow(config, store, client)

    @classmethod
    def from_config(cls, config: ServiceConfig, database: str | Database) -> "DiscordService":
        store = init_account_db(database, config.table_name)
        return cls(config, store, DiscordGuildClient(config))

    async def close(self):
        await self.client.close()

    def create_table(self):
        self.store.create_table()

    def get_accounts(self, characters: List[CoreCharacter]) -> List[ServiceAccountData]:
        if not characters:
            return []
        account = self.store.fetch_player_account(
            [c.id for c in characters], characters[0].player_id
        )
        return [account] if account else []

    def register(
        self,
        character: CoreCharacter,
        groups: Iterable[CoreGroup],
        email_address: str,
        all_character_ids: Iterable[int],
    ) -> ServiceAccountData:
        # The Discord side is linked later through the OAuth callback.
        self.store.create_account(
            character.id, character.player_id, MemberStatus.NONMEMBER, USERNAME_NA
        )
        return ServiceAccountData(character.id, USERNAME_NA)

    async def update_account(
        self,
        character: CoreCharacter,
        groups: Iterable[CoreGroup],
        main_character: Optional[CoreCharacter],
    ):
        if main_character is None:
            main_character = CoreCharacter(0, character.player_id)
        await self.update_player_account(main_character, groups)

    async def update_player_account(
        self,
        main_character: CoreCharacter,
        groups: Iterable[CoreGroup],
        ctx: Optional[SweepContext] = None,
    ):
        """Reconcile one player; ``ctx`` is only shared by the accounts of one sweep."""
        await self.engine.update_player_account(
            main_character, groups, ctx if ctx is not None else SweepContext()
        )

    async def get_all_player_accounts(self, ctx: Optional[SweepContext] = None) -> List[int]:
        return await self.engine.get_all_player_accounts(
            ctx if ctx is not None else SweepContext()
        )

    def move_player_account(self, from_player_id: int, to_player_id: int) -> bool:
        return self.store.move_account(from_player_id, to_player_id)

    def search(self, query: str) -> List[int]:
        return self.store.find(query)

    def reset_password(self, character_id: int) -> str:
        raise NotImplementedError("Discord accounts have no password to reset")

    async def request(
        self,
        character: CoreCharacter,
        name: str,
        query: Mapping[str, Any],
        session: MutableMapping[str, Any],
        groups: Iterable[CoreGroup],
    ) -> Response:
        if name == "login":
            return Response.redirect(self.linking.authorize_url(session))
        if name == "callback":
            result = await self.linking.callback(
                character, session, query.get("state"), query.get("code")
            )
            if result.success:
                await self._reconcile_after_link(character, list(groups))
            return Response.redirect(redirect_location(self.config.service_id, result.message))
        return Response(status=404, body="404 Not Found.")

    async def _reconcile_after_link(self, character: CoreCharacter, groups: List[CoreGroup]):
        try:
            await self.engine.update_player_account(character, groups, SweepContext())
        except (ReconciliationError, AccountStoreError) as exc:
            LOGGER.warning(
                "Reconciliation after linking failed for player %s: %s",
                character.player_id,
                exc,
            )
        except Exception as exc:
            LOGGER.exception(
                "Unexpected error reconciling player %s after linking: %s",
                character.player_id,
                exc,
            )
