import sys
from pathlib import Path

import pytest
from peewee import SqliteDatabase

# Ensure project root is on sys.path for `import guildlink`
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from guildlink.models import init_account_db  # noqa: E402


@pytest.fixture
def store():
    db = SqliteDatabase(":memory:")
    account_store = init_account_db(db, "discord_accounts")
    yield account_store
    db.close()
