"""
Session and profile lifecycle for one client.

AuthContext is the only writer of the client's session/user/profile state.
It listens to the auth provider, makes sure every signed-in user has a
profile row, and wraps sign in/up/out with notifications and navigation.
Views read the state through the properties or `snapshot()`.
"""

import asyncio
import logging
import os
from enum import Enum
from typing import Any, Dict, Optional, Set

from pydantic import ValidationError

from auth import AuthClient, AuthError
from database import NO_ROWS, DataStore, StoreError
from schemas import AuthSnapshot, Profile, Session, User
from ui import Navigator, Toaster

logger = logging.getLogger(__name__)

SITE_URL = os.getenv("SITE_URL", "http://localhost:8000")

UNEXPECTED = "An unexpected error occurred"


class AuthPhase(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATING = "authenticating"
    PROFILE_ABSENT = "profile-absent"
    PROFILE_PRESENT = "profile-present"


def profile_name(metadata: Dict[str, Any], email: Optional[str]) -> Optional[str]:
    """Display name for a new profile: metadata name, else email local-part."""
    if metadata.get("name"):
        return metadata["name"]
    if email:
        return email.split("@")[0] or None
    return None


def _message(e: Exception) -> str:
    return getattr(e, "message", None) or str(e) or UNEXPECTED


class AuthContext:
    def __init__(
        self,
        auth: AuthClient,
        store: DataStore,
        toaster: Toaster,
        navigator: Navigator,
        site_url: str = SITE_URL,
    ):
        self.auth = auth
        self.store = store
        self.toaster = toaster
        self.navigator = navigator
        self.site_url = site_url.rstrip("/")

        self._session: Optional[Session] = None
        self._user: Optional[User] = None
        self._profile: Optional[Profile] = None
        self._is_loading = True
        self._subscription = None
        self._tasks: Set[asyncio.Task] = set()

    # ---------- read-only projections ----------

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def user(self) -> Optional[User]:
        return self._user

    @property
    def profile(self) -> Optional[Profile]:
        return self._profile

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def phase(self) -> AuthPhase:
        if self._user is None:
            return AuthPhase.AUTHENTICATING if self._is_loading else AuthPhase.ANONYMOUS
        if self._profile is None:
            return AuthPhase.PROFILE_ABSENT
        return AuthPhase.PROFILE_PRESENT

    def snapshot(self) -> AuthSnapshot:
        return AuthSnapshot(
            user=self._user,
            profile=self._profile,
            is_loading=self._is_loading,
            phase=self.phase.value,
        )

    # ---------- lifecycle ----------

    async def start(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = self.auth.on_auth_state_change(self._on_auth_state_change)

        # A session may already exist from before the subscription.
        try:
            session = await self.auth.get_session()
        except Exception as e:
            logger.error("Error checking existing session: %s", e)
            self.toaster.error("Session check failed", _message(e))
            session = None

        self._set_session(session)
        if self._user is not None:
            self._spawn_profile_load(self._user.id)
        self._is_loading = False

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def wait_idle(self) -> None:
        """Wait until every scheduled profile load has finished."""
        while True:
            await asyncio.sleep(0)
            if not self._tasks:
                return
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _set_session(self, session: Optional[Session]) -> None:
        self._session = session
        self._user = session.user if session else None

    def _on_auth_state_change(self, event: str, session: Optional[Session]) -> None:
        logger.info("Auth state change event: %s", event)
        self._set_session(session)

        if event in ("SIGNED_IN", "USER_UPDATED"):
            # Runs inside the provider's own call; load on the next loop turn.
            if session is not None:
                asyncio.get_running_loop().call_soon(self._spawn_profile_load, session.user.id)
        elif event == "SIGNED_OUT":
            self._profile = None

    def _spawn_profile_load(self, user_id: str) -> None:
        task = asyncio.ensure_future(self.fetch_profile(user_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ---------- profile ----------

    def _store_profile(self, user_id: str, row: Dict[str, Any]) -> None:
        try:
            profile = Profile.model_validate(row)
        except ValidationError as e:
            logger.warning("Discarding malformed profile row for %s: %s", user_id, e)
            return
        # The user may have signed out while the row was in flight.
        if self._user is not None and self._user.id == user_id:
            self._profile = profile

    async def fetch_profile(self, user_id: Optional[str]) -> None:
        if not user_id:
            return
        logger.info("Fetching profile for user: %s", user_id)
        try:
            row = await self.store.select_single("profiles", id=user_id)
        except StoreError as e:
            if e.code == NO_ROWS:
                logger.info("Profile not found, creating a new one")
                await self._create_profile(user_id)
            else:
                logger.error("Error fetching profile: %s", e.message)
            return
        except Exception:
            logger.exception("Error fetching profile")
            return
        self._store_profile(user_id, row)

    async def _create_profile(self, user_id: str) -> None:
        metadata: Dict[str, Any] = {}
        email = None
        try:
            user = await self.auth.get_user()
            metadata, email = user.user_metadata, user.email
        except AuthError as e:
            logger.warning("Could not load user metadata for %s: %s", user_id, e.message)

        try:
            await self.store.rpc(
                "create_profile",
                user_id=user_id,
                user_email=email,
                user_name=profile_name(metadata, email),
            )
        except Exception as e:
            logger.error("Error creating profile via RPC: %s", e)
            self.toaster.error("Profile setup failed", "There was an issue setting up your profile.")
            return

        try:
            row = await self.store.select_single("profiles", id=user_id)
        except Exception as e:
            logger.error("Error fetching created profile: %s", e)
            return
        self._store_profile(user_id, row)

    async def refresh_profile(self) -> None:
        if self._user is not None:
            await self.fetch_profile(self._user.id)

    # ---------- account operations ----------

    async def sign_in(self, email: str, password: str) -> None:
        self._is_loading = True
        try:
            await self.auth.sign_in_with_password(email, password)
        except Exception as e:
            logger.warning("Login failed for %s: %s", email, e)
            self.toaster.error("Login failed", _message(e))
        else:
            self.toaster.success("Login successful", "Welcome back to ProblemScout!")
            self.navigator.navigate("/home")
        finally:
            self._is_loading = False

    async def sign_up(self, email: str, password: str, name: str) -> None:
        self._is_loading = True
        try:
            response = await self.auth.sign_up(
                email,
                password,
                data={"name": name},
                email_redirect_to=f"{self.site_url}/auth/callback",
            )
        except Exception as e:
            logger.warning("Registration failed for %s: %s", email, e)
            self.toaster.error("Registration failed", _message(e))
        else:
            if response.session is not None:
                self.toaster.success(
                    "Registration successful",
                    "Welcome to ProblemScout! You can now start reporting problems.",
                )
                self.navigator.navigate("/home")
            else:
                self.toaster.info("Check your email", "Please check your email to confirm your registration.")
                self.navigator.navigate("/login")
        finally:
            self._is_loading = False

    async def sign_out(self) -> None:
        self._is_loading = True
        try:
            await self.auth.sign_out()
        except Exception as e:
            logger.warning("Sign out failed: %s", e)
            self.toaster.error("Sign out failed", _message(e))
        else:
            self.toaster.success("Signed out successfully")
            self.navigator.navigate("/")
        finally:
            self._is_loading = False

    async def handle_auth_callback(self, token: Optional[str] = None) -> None:
        """Landing flow for the email confirmation link."""
        try:
            if token:
                await self.auth.verify_email(token)
            session = await self.auth.get_session()
        except Exception as e:
            logger.error("Error in auth callback: %s", e)
            self.toaster.error("Authentication failed", _message(e))
            self.navigator.navigate("/login")
            return

        if session is None:
            self.toaster.info("No session found", "Please log in.")
            self.navigator.navigate("/login")
            return

        self.toaster.success("Authentication successful", "You are now logged in.")
        self.navigator.navigate("/home")
