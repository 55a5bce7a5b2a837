"""
Row store for ProblemScout backed by MongoDB.

Tables are collections; every row carries its own string `id`. Reads of
`problems` and `profiles` are public, writes go through the row-level rules
in `_check_insert`, and `create_profile` is the one privileged procedure.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi.concurrency import run_in_threadpool
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "problemscout")

NO_ROWS = "PGRST116"
RLS_VIOLATION = "42501"
UNIQUE_VIOLATION = "23505"
UNDEFINED_FUNCTION = "42883"

db = None
if DATABASE_URL:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


class StoreError(Exception):
    def __init__(self, code: Optional[str], message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def ensure_schema(database) -> None:
    database["users"].create_index("id", unique=True)
    database["users"].create_index("email", unique=True)
    database["profiles"].create_index("id", unique=True)
    database["problems"].create_index("id", unique=True)
    database["problems"].create_index([("created_at", DESCENDING)])


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DataStore:
    """Async facade over the collections, bound to one client's auth state.

    `auth` is anything with a `current_user_id` attribute (the client's
    AuthClient); it decides what the row-level rules allow.
    """

    def __init__(self, database, auth=None):
        self.db = database
        self.auth = auth
        self._procedures = {"create_profile": self._create_profile}

    @property
    def auth_uid(self) -> Optional[str]:
        return getattr(self.auth, "current_user_id", None)

    async def select_single(self, table: str, **eq) -> Dict[str, Any]:
        rows = await self._run(self._find, table, eq, None, True, 2)
        if len(rows) != 1:
            raise StoreError(NO_ROWS, "JSON object requested, multiple (or no) rows returned")
        return rows[0]

    async def select(
        self,
        table: str,
        order_by: Optional[str] = None,
        ascending: bool = True,
        limit: Optional[int] = None,
        **eq,
    ) -> List[Dict[str, Any]]:
        return await self._run(self._find, table, eq, order_by, ascending, limit)

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        self._check_insert(table, row)
        return await self._run(self._insert, table, dict(row))

    async def rpc(self, name: str, **params) -> Any:
        procedure = self._procedures.get(name)
        if procedure is None:
            raise StoreError(UNDEFINED_FUNCTION, f"function {name} does not exist")
        return await self._run(procedure, **params)

    # ---------- row-level rules ----------

    def _check_insert(self, table: str, row: Dict[str, Any]) -> None:
        uid = self.auth_uid
        if table == "problems" and uid is not None and row.get("user_id") == uid:
            return
        raise StoreError(
            RLS_VIOLATION,
            f'new row violates row-level security policy for table "{table}"',
        )

    # ---------- sync helpers, run in the thread pool ----------

    async def _run(self, fn, *args, **kwargs):
        if self.db is None:
            raise StoreError(None, "Database not configured")
        try:
            return await run_in_threadpool(fn, *args, **kwargs)
        except DuplicateKeyError:
            raise StoreError(UNIQUE_VIOLATION, "duplicate key value violates unique constraint")
        except PyMongoError as e:
            logger.error("Store call failed: %s", e)
            raise StoreError(None, str(e))

    def _find(self, table, eq, order_by, ascending, limit):
        cursor = self.db[table].find(eq, {"_id": 0})
        if order_by:
            cursor = cursor.sort(order_by, ASCENDING if ascending else DESCENDING)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def _insert(self, table, row):
        self.db[table].insert_one(row)
        row.pop("_id", None)
        return row

    def _create_profile(self, user_id: str, user_email: Optional[str] = None, user_name: Optional[str] = None):
        profiles = self.db["profiles"]
        now = _now_iso()
        row = {
            "username": user_name,
            "email": user_email,
            "avatar_url": None,
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = profiles.update_one({"id": user_id}, {"$setOnInsert": row}, upsert=True)
            if result.upserted_id is not None:
                logger.info("Created profile for user %s", user_id)
        except DuplicateKeyError:
            # Another client upserted the same id first; its row stands.
            logger.info("Profile for user %s created concurrently", user_id)
        return profiles.find_one({"id": user_id}, {"_id": 0})
