"""Auth collaborator: current user, bearer credential, sign-in/out events.

``GoogleAuthSession`` keeps an OAuth user credential (obtained by whatever
sign-in flow the host app uses) and hands out Google ID tokens as bearer
credentials, refreshing them with ``google-auth`` when asked.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Union

from google.auth import exceptions as google_auth_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import credentials as oauth2_credentials
from google.oauth2 import id_token

from ..errors import CredentialRefreshError

logger = logging.getLogger(__name__)

AuthListener = Callable[[Optional[str]], Union[None, Awaitable[None]]]


class AuthSession(ABC):
    """Contract the session core relies on.

    Listeners receive the new user id on sign-in and ``None`` on sign-out.
    ``wait_ready`` resolves once the initial auth state is known, so callers
    await it once instead of polling.
    """

    def __init__(self) -> None:
        self._listeners: List[AuthListener] = []
        self._ready = asyncio.Event()

    @abstractmethod
    def current_user_id(self) -> Optional[str]:
        ...

    @abstractmethod
    async def get_credential(self) -> str:
        ...

    @abstractmethod
    async def refresh_credential(self) -> str:
        ...

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def mark_ready(self) -> None:
        self._ready.set()

    async def wait_ready(self) -> None:
        await self._ready.wait()

    async def _notify(self, user_id: Optional[str]) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(user_id)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Auth listener failed for transition to %s", user_id or "signed-out")


class GoogleAuthSession(AuthSession):
    """Google sign-in backed session using ID tokens as bearer credentials."""

    def __init__(self, client_id: str) -> None:
        super().__init__()
        self.client_id = client_id
        self._credentials: Optional[oauth2_credentials.Credentials] = None
        self._user_id: Optional[str] = None
        self.email: Optional[str] = None
        self._request = google_requests.Request()

    def current_user_id(self) -> Optional[str]:
        return self._user_id

    async def sign_in(self, credentials: oauth2_credentials.Credentials) -> str:
        """Adopt ``credentials``, verify the ID token and announce the user."""
        self._credentials = credentials
        token = credentials.id_token or await self.refresh_credential()
        try:
            claims = await asyncio.to_thread(
                id_token.verify_oauth2_token, token, self._request, self.client_id
            )
        except ValueError as exc:
            self._credentials = None
            raise CredentialRefreshError(f"ID token verification failed: {exc}") from exc

        self._user_id = claims["sub"]
        self.email = claims.get("email")
        logger.info("Signed in as %s", self.email or self._user_id)
        self.mark_ready()
        await self._notify(self._user_id)
        return self._user_id

    async def sign_out(self) -> None:
        was_signed_in = self._user_id is not None
        self._credentials = None
        self._user_id = None
        self.email = None
        self.mark_ready()
        if was_signed_in:
            logger.info("Signed out")
            await self._notify(None)

    def resolve_signed_out(self) -> None:
        """Record that startup found no stored sign-in."""
        self.mark_ready()

    async def get_credential(self) -> str:
        if self._credentials is None:
            raise CredentialRefreshError("Not signed in")
        if self._credentials.id_token and not self._credentials.expired:
            return self._credentials.id_token
        return await self.refresh_credential()

    async def refresh_credential(self) -> str:
        if self._credentials is None:
            raise CredentialRefreshError("Not signed in")
        try:
            await asyncio.to_thread(self._credentials.refresh, self._request)
        except google_auth_exceptions.RefreshError as exc:
            logger.warning("Credential refresh failed: %s", exc)
            raise CredentialRefreshError(str(exc)) from exc
        token = self._credentials.id_token
        if not token:
            raise CredentialRefreshError("Refresh returned no ID token")
        logger.debug("Credential refreshed")
        return token
