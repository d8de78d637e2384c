from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Set, Tuple

from peewee import (
    SQL,
    BigIntegerField,
    CharField,
    Database,
    DateTimeField,
    IntegerField,
    Model,
    NodeList,
    PeeweeException,
    SqliteDatabase,
)

from .config import MISSING_TABLE_NAME
from .core import USERNAME_NA, CoreCharacter, MemberStatus, ServiceAccountData

LOGGER = logging.getLogger(__name__)

ID_CHUNK_SIZE = 500


def utcnow_naive() -> datetime:
    """Return current UTC time without tzinfo for database storage."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AccountStoreError(Exception):
    pass


def _create_account_model(db: Database, name: str) -> type:
    class Account(Model):
        character_id = IntegerField(unique=True)
        player_id = IntegerField(unique=True)
        discord_id = BigIntegerField(null=True, unique=True)
        member_status = CharField(max_length=32, index=True)
        username = CharField(max_length=255, null=True)
        discriminator = CharField(max_length=8, null=True)
        created = DateTimeField(null=True, default=utcnow_naive)
        updated = DateTimeField(null=True, default=utcnow_naive, index=True)

        def save(self, *args, **kwargs):  # type: ignore[override]
            self.updated = utcnow_naive()
            return super().save(*args, **kwargs)

        class Meta:
            database = db
            table_name = name

    return Account


def _chunks(values: List[int], size: int = ID_CHUNK_SIZE) -> Iterator[List[int]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _escape_like(query: str) -> str:
    return query.replace("\\", "\\\\").replace("_", "\\_").replace("%", "\\%")


def _like(expression, pattern: str):
    return NodeList((expression, SQL("LIKE"), pattern, SQL("ESCAPE '\\'")))


def display_username(username: Optional[str], discriminator: Optional[str]) -> str:
    name = username or ""
    # Discord dropped discriminators, migrated users report "0".
    if name != USERNAME_NA and discriminator and discriminator != "0":
        return f"{name}#{discriminator}"
    return name


@dataclass
class AccountStore:
    """Query contract over the accounts table."""

    db: Database
    table_name: str

    def __post_init__(self):
        self.Account = _create_account_model(self.db, self.table_name)

    @contextmanager
    def _storage(self, action: str) -> Iterator[None]:
        try:
            yield
        except PeeweeException as exc:
            LOGGER.error("Account storage failed to %s: %s", action, exc)
            raise AccountStoreError(f"Failed to {action}.") from exc

    def create_table(self):
        if not self.table_name or self.table_name == MISSING_TABLE_NAME:
            LOGGER.warning("No table name configured, not creating the accounts table")
            return
        with self._storage("create the accounts table"):
            self.db.create_tables([self.Account], safe=True)

    def fetch_player_account(
        self, character_ids: Iterable[int], player_id: int
    ) -> Optional[ServiceAccountData]:
        ids = list(character_ids)
        if not ids:
            return None
        Account = self.Account
        with self._storage("fetch the player account"):
            # player_id excludes characters that were moved to another account.
            row = Account.get_or_none(
                Account.character_id.in_(ids) & (Account.player_id == player_id)
            )
        if row is None:
            return None
        return ServiceAccountData(
            character_id=row.character_id,
            username=display_username(row.username, row.discriminator),
            status=row.member_status,
        )

    def create_account(
        self, character_id: int, player_id: int, status: MemberStatus, username: str
    ):
        with self._storage("create the account"):
            self.Account.create(
                character_id=character_id,
                player_id=player_id,
                member_status=MemberStatus(status).value,
                username=username,
            )

    def get_member_data(self, player_id: int) -> Optional[Tuple[int, Optional[int]]]:
        Account = self.Account
        with self._storage("read member data"):
            row = Account.get_or_none(Account.player_id == player_id)
        if row is None:
            return None
        return row.character_id, row.discord_id

    def delete_account(self, player_id: int):
        Account = self.Account
        with self._storage("delete the account"):
            Account.delete().where(Account.player_id == player_id).execute()

    def update_character_id(self, character: CoreCharacter):
        Account = self.Account
        with self._storage("update the character ID"):
            Account.update(character_id=character.id, updated=utcnow_naive()).where(
                Account.player_id == character.player_id
            ).execute()

    def update_account_status(
        self,
        status: MemberStatus,
        *,
        player_id: Optional[int] = None,
        discord_ids: Optional[Iterable[int]] = None,
    ):
        Account = self.Account
        status_value = MemberStatus(status).value
        with self._storage("update the member status"):
            if player_id:
                Account.update(member_status=status_value, updated=utcnow_naive()).where(
                    Account.player_id == player_id
                ).execute()
                return
            for chunk in _chunks(list(discord_ids or [])):
                Account.update(member_status=status_value, updated=utcnow_naive()).where(
                    Account.discord_id.in_(chunk)
                ).execute()

    def update_member_data(self, player_id: int, username: str, discriminator: str):
        Account = self.Account
        with self._storage("update username/discriminator"):
            Account.update(
                member_status=MemberStatus.ACTIVE.value,
                username=username,
                discriminator=discriminator,
                updated=utcnow_naive(),
            ).where(Account.player_id == player_id).execute()

    def get_discord_ids(self, discord_ids: Iterable[int]) -> Set[int]:
        Account = self.Account
        known: Set[int] = set()
        with self._storage("look up Discord IDs"):
            for chunk in _chunks(list(discord_ids)):
                query = Account.select(Account.discord_id).where(
                    Account.discord_id.in_(chunk)
                )
                known.update(int(row.discord_id) for row in query)
        return known

    def fetch_active_player_ids(self) -> List[int]:
        Account = self.Account
        with self._storage("fetch active accounts"):
            query = (
                Account.select(Account.player_id)
                .where(Account.member_status == MemberStatus.ACTIVE.value)
                .order_by(Account.updated, Account.player_id)
            )
            return [row.player_id for row in query]

    def delete_other_accounts(self, discord_id: int, player_id: int) -> bool:
        Account = self.Account
        try:
            Account.delete().where(
                (Account.discord_id == discord_id) & (Account.player_id != player_id)
            ).execute()
        except PeeweeException as exc:
            LOGGER.error("Failed to delete other accounts of %s: %s", discord_id, exc)
            return False
        return True

    def account_exists(self, player_id: int) -> bool:
        Account = self.Account
        with self._storage("check the account"):
            return Account.select().where(Account.player_id == player_id).exists()

    def update_account(
        self,
        character: CoreCharacter,
        discord_id: int,
        username: str,
        discriminator: str,
    ) -> bool:
        Account = self.Account
        try:
            Account.update(
                character_id=character.id,
                discord_id=discord_id,
                username=username,
                member_status=MemberStatus.ACTIVE.value,
                discriminator=discriminator,
                updated=utcnow_naive(),
            ).where(Account.player_id == character.player_id).execute()
        except PeeweeException as exc:
            LOGGER.error("Failed to update account of player %s: %s", character.player_id, exc)
            return False
        return True

    def move_account(self, from_player_id: int, to_player_id: int) -> bool:
        """Reassign an account to another player, all or nothing.

        Fails without changes when the destination player already has a row
        or the source player has none.
        """
        Account = self.Account
        try:
            with self.db.atomic():
                if Account.select().where(Account.player_id == to_player_id).exists():
                    return False
                moved = (
                    Account.update(player_id=to_player_id, updated=utcnow_naive())
                    .where(Account.player_id == from_player_id)
                    .execute()
                )
                return moved > 0
        except PeeweeException as exc:
            LOGGER.error(
                "Failed to move account from %s to %s: %s", from_player_id, to_player_id, exc
            )
            return False

    def find(self, query: str) -> List[int]:
        Account = self.Account
        pattern = f"%{_escape_like(query)}%"
        with self._storage("search accounts"):
            rows = Account.select(Account.character_id).where(
                _like(Account.discord_id.cast("TEXT"), pattern)
                | _like(Account.username, pattern)
                | _like(Account.discriminator, pattern)
                | _like(Account.username.concat("#").concat(Account.discriminator), pattern)
            )
            return [row.character_id for row in rows]


def init_account_db(database: str | Database, table_name: str) -> AccountStore:
    if isinstance(database, Database):
        db = database
    else:
        if database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        db = SqliteDatabase(database)
    db.connect(reuse_if_open=True)
    store = AccountStore(db, table_name)
    store.create_table()
    return store
