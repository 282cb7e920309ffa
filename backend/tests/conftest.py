"""
Shared fixtures for the credit ledger tests

The ledger runs against an in-memory mongomock database. Motor's API is
async, so the fixtures expose mongomock through a thin awaitable adapter
with the same call shapes the services use (find_one, update_one,
find().sort().to_list(), aggregate().to_list(), ...).
"""

import os
import sys
from pathlib import Path

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "credit_ledger_test")
os.environ.setdefault("ENVIRONMENT", "test")

sys.path.insert(0, str(Path(__file__).parent.parent))

import mongomock
import pytest

from credit_ledger.db_init import ensure_indexes
from credit_ledger.ledger_store import LedgerStore
from credit_ledger.locks import PoolLocks
from credit_ledger.transaction_log import TransactionLogger


class AsyncCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    def sort(self, *args, **kwargs):
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    def limit(self, count):
        self._cursor = self._cursor.limit(count)
        return self

    async def to_list(self, length=None):
        docs = list(self._cursor)
        return docs if length is None else docs[:length]


class AsyncCollection:
    def __init__(self, collection):
        self._collection = collection

    def find(self, *args, **kwargs):
        return AsyncCursor(self._collection.find(*args, **kwargs))

    def aggregate(self, *args, **kwargs):
        return AsyncCursor(self._collection.aggregate(*args, **kwargs))

    def __getattr__(self, name):
        method = getattr(self._collection, name)

        async def call(*args, **kwargs):
            return method(*args, **kwargs)

        return call


class AsyncDatabase:
    def __init__(self, database):
        self.sync = database

    def __getitem__(self, name):
        return AsyncCollection(self.sync[name])

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return AsyncCollection(self.sync[name])

    async def list_collection_names(self):
        return self.sync.list_collection_names()

    async def create_collection(self, name, **kwargs):
        return self.sync.create_collection(name, **kwargs)


@pytest.fixture
def raw_db():
    """The synchronous mongomock database behind `db` (for out-of-band writes)."""
    return mongomock.MongoClient()["credit_ledger_test"]


@pytest.fixture
async def db(raw_db):
    database = AsyncDatabase(raw_db)
    await ensure_indexes(database)
    return database


@pytest.fixture
def locks():
    return PoolLocks()


@pytest.fixture
def store(db):
    return LedgerStore(db)


@pytest.fixture
def transactions(db):
    return TransactionLogger(db, max_attempts=3, base_delay=0)


# ==================== SEED HELPERS ====================

async def make_school(store, balance=100.0, settings=None):
    """Organization with an owner, a teacher, a class and two students."""
    org = await store.create_organization("Lycée Test", "school", opening_balance=balance, settings=settings)
    await store.create_profile(email="owner@example.com", display_name="Owner", user_id="owner")
    await store.create_profile(email="teacher@example.com", display_name="Teacher", user_id="teacher")
    klass = await store.create_class(org["id"], "Terminale A")
    members = {
        "owner": await store.add_member(org["id"], "owner", "owner"),
        "teacher": await store.add_member(org["id"], "teacher", "teacher"),
    }
    for name in ("alice", "bob"):
        await store.create_profile(email=f"{name}@example.com", display_name=name.title(), user_id=name)
        members[name] = await store.add_member(org["id"], name, "student", class_id=klass["id"])
    return org, klass, members


async def make_family(store, balance=0.0, subscription=None):
    """Family organization with one parent and one child."""
    org = await store.create_organization(
        "Famille Martin", "family", opening_balance=balance, subscription=subscription
    )
    await store.create_profile(
        email="parent@example.com", display_name="Parent", user_id="parent", opening_balance=balance
    )
    await store.create_profile(email="kid@example.com", display_name="Léa", user_id="kid")
    parent = await store.add_member(org["id"], "parent", "owner")
    child = await store.add_member(org["id"], "kid", "student", supervision_mode="guided")
    return org, parent, child
