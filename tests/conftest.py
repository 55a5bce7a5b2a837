import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import mongomock
import pytest
from jose import jwt

from auth import JWT_ALG, JWT_SECRET, AuthClient, pwd_context
from auth_context import AuthContext
from database import DataStore, ensure_schema
from reporting import ProblemReporter
from ui import Navigator, Toaster


@pytest.fixture
def db():
    database = mongomock.MongoClient().db
    ensure_schema(database)
    return database


def add_user(db, email, password="secret123", user_id=None, metadata=None, confirmed=True):
    now = datetime.now(timezone.utc)
    doc = {
        "id": user_id or str(uuid.uuid4()),
        "email": email.lower() if email else None,
        "password_hash": pwd_context.hash(password),
        "user_metadata": metadata or {},
        "email_confirmed_at": now if confirmed else None,
        "confirmation_token": None,
        "created_at": now,
    }
    db["users"].insert_one(doc)
    return doc["id"]


def make_app(db, auto_confirm=True):
    auth = AuthClient(db, auto_confirm=auto_confirm)
    store = DataStore(db, auth)
    toaster = Toaster()
    navigator = Navigator()
    ctx = AuthContext(auth, store, toaster, navigator, site_url="http://scout.test")
    reporter = ProblemReporter(ctx, store, toaster)
    return SimpleNamespace(
        auth=auth, store=store, toaster=toaster, navigator=navigator, ctx=ctx, reporter=reporter
    )


def record_calls(monkeypatch, obj, name):
    """Wrap an async method so each call's arguments are recorded."""
    calls = []
    original = getattr(obj, name)

    async def wrapper(*args, **kwargs):
        calls.append((args, kwargs))
        return await original(*args, **kwargs)

    monkeypatch.setattr(obj, name, wrapper)
    return calls


@pytest.fixture
def app(db):
    return make_app(db)


def problem_row(problem_id, user_id="u1", created_at="2024-05-01T10:00:00+00:00"):
    return {
        "id": problem_id,
        "user_id": user_id,
        "title": "Pothole on Main Street",
        "description": "Large pothole near the intersection",
        "category": "roads",
        "location": {"lat": 40.7128, "lng": -74.006, "address": "Main St & 5th Ave"},
        "image_url": None,
        "status": "pending",
        "upvotes": 0,
        "created_at": created_at,
        "updated_at": created_at,
    }


def store_for(db, user_id=None):
    return DataStore(db, SimpleNamespace(current_user_id=user_id))


def expire_session(auth_client):
    """Swap the client's access token for one that expired a minute ago."""
    session = auth_client._session
    past = datetime.now(timezone.utc) - timedelta(minutes=1)
    token = jwt.encode({"sub": session.user.id, "exp": past}, JWT_SECRET, algorithm=JWT_ALG)
    auth_client._session = session.model_copy(update={"access_token": token})
