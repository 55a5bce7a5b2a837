"""
Email/password authentication provider.

One AuthClient per browser client: it owns that client's session and notifies
subscribers of auth state changes. Accounts live in the `users` collection.
"""

import asyncio
import logging
import os
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi.concurrency import run_in_threadpool
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.errors import DuplicateKeyError

from schemas import AuthChangeEvent, AuthResponse, Session, User

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change")
JWT_ALG = "HS256"
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", str(60 * 24 * 14)))  # 14 days
AUTH_AUTO_CONFIRM = os.getenv("AUTH_AUTO_CONFIRM", "true").lower() in ("1", "true", "yes")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

AuthListener = Callable[[AuthChangeEvent, Optional[Session]], None]


class AuthError(Exception):
    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


class Subscription:
    def __init__(self, client: "AuthClient", callback: AuthListener):
        self._client = client
        self.callback = callback

    def unsubscribe(self) -> None:
        if self.callback in self._client._listeners:
            self._client._listeners.remove(self.callback)


# ---------- Token helpers ----------

def create_token(user_id: str, email: Optional[str]):
    now = datetime.now(timezone.utc)
    expires = now + timedelta(minutes=JWT_EXPIRE_MINUTES)
    payload = {"sub": user_id, "email": email, "exp": expires, "iat": now}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG), int(expires.timestamp())


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        return None


def _to_user(doc: Dict[str, Any]) -> User:
    return User(
        id=doc["id"],
        email=doc.get("email"),
        user_metadata=doc.get("user_metadata") or {},
        email_confirmed_at=doc.get("email_confirmed_at"),
        created_at=doc.get("created_at"),
    )


class AuthClient:
    def __init__(self, database, auto_confirm: Optional[bool] = None):
        self.db = database
        self.auto_confirm = AUTH_AUTO_CONFIRM if auto_confirm is None else auto_confirm
        self._session: Optional[Session] = None
        self._listeners: List[AuthListener] = []

    @property
    def current_user_id(self) -> Optional[str]:
        session = self._valid_session()
        return session.user.id if session else None

    def on_auth_state_change(self, callback: AuthListener) -> Subscription:
        self._listeners.append(callback)
        asyncio.get_running_loop().call_soon(self._initial_session, callback)
        return Subscription(self, callback)

    def _initial_session(self, callback: AuthListener) -> None:
        if callback in self._listeners:
            callback("INITIAL_SESSION", self._valid_session())

    def _emit(self, event: str) -> None:
        logger.info("Auth event %s", event)
        for listener in list(self._listeners):
            listener(event, self._session)

    def _valid_session(self) -> Optional[Session]:
        if self._session and decode_token(self._session.access_token) is None:
            logger.info("Dropping expired session for %s", self._session.user.id)
            self._session = None
            self._emit("SIGNED_OUT")
        return self._session

    def _start_session(self, doc: Dict[str, Any]) -> Session:
        token, expires_at = create_token(doc["id"], doc.get("email"))
        self._session = Session(access_token=token, expires_at=expires_at, user=_to_user(doc))
        return self._session

    # ---------- Provider operations ----------

    async def get_session(self) -> Optional[Session]:
        return self._valid_session()

    async def get_user(self) -> User:
        session = self._valid_session()
        if session is None:
            raise AuthError("Auth session missing!", 401)
        doc = await run_in_threadpool(self.db["users"].find_one, {"id": session.user.id})
        if not doc:
            raise AuthError("User not found", 404)
        return _to_user(doc)

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        doc = await run_in_threadpool(self.db["users"].find_one, {"email": email.lower()})
        if not doc or not pwd_context.verify(password, doc.get("password_hash", "")):
            raise AuthError("Invalid login credentials")
        if not doc.get("email_confirmed_at"):
            raise AuthError("Email not confirmed")
        session = self._start_session(doc)
        self._emit("SIGNED_IN")
        return session

    async def sign_up(
        self,
        email: str,
        password: str,
        data: Optional[Dict[str, Any]] = None,
        email_redirect_to: Optional[str] = None,
    ) -> AuthResponse:
        now = datetime.now(timezone.utc)
        doc = {
            "id": str(uuid.uuid4()),
            "email": email.lower(),
            "password_hash": pwd_context.hash(password),
            "user_metadata": dict(data or {}),
            "email_confirmed_at": now if self.auto_confirm else None,
            "confirmation_token": None if self.auto_confirm else secrets.token_urlsafe(24),
            "created_at": now,
        }
        try:
            await run_in_threadpool(self.db["users"].insert_one, doc)
        except DuplicateKeyError:
            raise AuthError("User already registered", 422)

        if not self.auto_confirm:
            link = f"{email_redirect_to or ''}?token={doc['confirmation_token']}"
            logger.info("Confirmation link for %s: %s", doc["email"], link)
            return AuthResponse(user=_to_user(doc), session=None)

        session = self._start_session(doc)
        self._emit("SIGNED_IN")
        return AuthResponse(user=session.user, session=session)

    async def verify_email(self, token: str) -> Session:
        doc = None
        if token:
            doc = await run_in_threadpool(self.db["users"].find_one, {"confirmation_token": token})
        if not doc:
            raise AuthError("Email link is invalid or has expired", 403)
        confirmed = {"email_confirmed_at": datetime.now(timezone.utc), "confirmation_token": None}
        await run_in_threadpool(self.db["users"].update_one, {"id": doc["id"]}, {"$set": confirmed})
        doc.update(confirmed)
        session = self._start_session(doc)
        self._emit("SIGNED_IN")
        return session

    async def update_user(self, data: Dict[str, Any]) -> User:
        user = await self.get_user()
        metadata = {**user.user_metadata, **data}
        await run_in_threadpool(
            self.db["users"].update_one, {"id": user.id}, {"$set": {"user_metadata": metadata}}
        )
        user.user_metadata = metadata
        self._session = self._session.model_copy(update={"user": user})
        self._emit("USER_UPDATED")
        return user

    async def sign_out(self) -> None:
        self._session = None
        self._emit("SIGNED_OUT")
