import asyncio
from types import SimpleNamespace

import pytest
from pymongo.errors import DuplicateKeyError

from conftest import problem_row, store_for
from database import NO_ROWS, RLS_VIOLATION, UNDEFINED_FUNCTION, UNIQUE_VIOLATION, DataStore, StoreError


def test_select_single_without_rows(db):
    with pytest.raises(StoreError) as exc:
        asyncio.run(store_for(db).select_single("profiles", id="missing"))
    assert exc.value.code == NO_ROWS


def test_insert_returns_row_without_mongo_id(db):
    row = asyncio.run(store_for(db, "u1").insert("problems", problem_row("p1")))
    assert row["id"] == "p1"
    assert "_id" not in row
    assert asyncio.run(store_for(db).select_single("problems", id="p1"))["title"] == "Pothole on Main Street"


def test_anonymous_insert_is_rejected(db):
    with pytest.raises(StoreError) as exc:
        asyncio.run(store_for(db).insert("problems", problem_row("p1")))
    assert exc.value.code == RLS_VIOLATION
    assert db["problems"].count_documents({}) == 0


def test_insert_for_someone_else_is_rejected(db):
    with pytest.raises(StoreError) as exc:
        asyncio.run(store_for(db, "u2").insert("problems", problem_row("p1", user_id="u1")))
    assert exc.value.code == RLS_VIOLATION


def test_profiles_cannot_be_inserted_directly(db):
    with pytest.raises(StoreError) as exc:
        asyncio.run(store_for(db, "u1").insert("profiles", {"id": "u1", "username": "me"}))
    assert exc.value.code == RLS_VIOLATION


def test_duplicate_id(db):
    store = store_for(db, "u1")
    asyncio.run(store.insert("problems", problem_row("p1")))
    with pytest.raises(StoreError) as exc:
        asyncio.run(store.insert("problems", problem_row("p1")))
    assert exc.value.code == UNIQUE_VIOLATION


def test_select_orders_and_filters(db):
    store = store_for(db, "u1")
    asyncio.run(store.insert("problems", problem_row("old", created_at="2024-01-01T00:00:00+00:00")))
    asyncio.run(store.insert("problems", problem_row("new", created_at="2024-06-01T00:00:00+00:00")))
    db["problems"].insert_one(problem_row("other", user_id="u2"))

    newest_first = asyncio.run(store.select("problems", order_by="created_at", ascending=False, user_id="u1"))
    assert [r["id"] for r in newest_first] == ["new", "old"]
    assert len(asyncio.run(store.select("problems", limit=1))) == 1


def test_create_profile_bypasses_row_rules_and_is_idempotent(db):
    store = store_for(db)
    created = asyncio.run(store.rpc("create_profile", user_id="u1", user_email="u1@scout.io", user_name="u1"))
    assert created["username"] == "u1"
    again = asyncio.run(store.rpc("create_profile", user_id="u1", user_email="u1@scout.io", user_name="other"))
    assert again["username"] == "u1"
    assert db["profiles"].count_documents({}) == 1


def test_unknown_procedure(db):
    with pytest.raises(StoreError) as exc:
        asyncio.run(store_for(db).rpc("drop_everything"))
    assert exc.value.code == UNDEFINED_FUNCTION


def test_unconfigured_database():
    with pytest.raises(StoreError) as exc:
        asyncio.run(DataStore(None).select("problems"))
    assert exc.value.message == "Database not configured"


def test_concurrent_create_profile_calls_share_one_row(db):
    store = store_for(db)

    async def both():
        return await asyncio.gather(
            store.rpc("create_profile", user_id="u1", user_email="u1@scout.io", user_name="a"),
            store.rpc("create_profile", user_id="u1", user_email="u1@scout.io", user_name="b"),
        )

    first, second = asyncio.run(both())
    assert first == second
    assert first["username"] in ("a", "b")
    assert db["profiles"].count_documents({"id": "u1"}) == 1


class _RacingProfiles:
    """Another writer creates the row just before our upsert lands."""

    def __init__(self, real):
        self.real = real

    def update_one(self, *args, **kwargs):
        self.real.insert_one({"id": "u1", "username": "first"})
        raise DuplicateKeyError("E11000 duplicate key error collection: profiles index: id_1")

    def __getattr__(self, name):
        return getattr(self.real, name)


class _RacingDb:
    def __init__(self, real):
        self.real = real

    def __getitem__(self, name):
        collection = self.real[name]
        return _RacingProfiles(collection) if name == "profiles" else collection


def test_create_profile_losing_the_race_returns_winner_row(db):
    store = DataStore(_RacingDb(db), SimpleNamespace(current_user_id=None))
    row = asyncio.run(store.rpc("create_profile", user_id="u1", user_email="u1@scout.io", user_name="second"))
    assert row["username"] == "first"
    assert db["profiles"].count_documents({"id": "u1"}) == 1
