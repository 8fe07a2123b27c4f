"""Remote persistence boundary.

``RemoteStore`` is the contract SessionStore relies on; ``HttpRemoteStore``
implements it against the chatsync HTTP service (see ``chatsync.api``),
attaching the auth collaborator's bearer credential to every call.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from ..errors import (
    CredentialExpiredError,
    RemoteStoreError,
    TransientStoreError,
)
from ..models.domain import ChatFolder, ChatRecord
from .auth_session import AuthSession

logger = logging.getLogger(__name__)

EXPIRED_TOKEN_CODE = "token_expired"


class RemoteStore(ABC):
    """CRUD on chat records keyed by (owner, id); ``put`` is an idempotent upsert."""

    @abstractmethod
    async def get(self, chat_id: str) -> Optional[ChatRecord]:
        ...

    @abstractmethod
    async def list(self, owner_id: str) -> List[ChatRecord]:
        ...

    @abstractmethod
    async def put(self, record: ChatRecord) -> None:
        ...

    @abstractmethod
    async def delete(self, chat_id: str) -> None:
        ...

    async def get_folders(self, owner_id: str) -> List[ChatFolder]:
        return []

    async def put_folders(self, owner_id: str, folders: List[ChatFolder]) -> None:
        return None


class HttpRemoteStore(RemoteStore):
    """RemoteStore over HTTP with one refresh-and-retry on expired credentials."""

    def __init__(
        self,
        base_url: str,
        auth: AuthSession,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.auth = auth
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------
    async def _send(self, method: str, path: str, credential: str, **kwargs: Any) -> httpx.Response:
        headers = {"Authorization": f"Bearer {credential}"}
        try:
            return await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.RequestError as exc:
            raise TransientStoreError(f"{method} {path} failed: {exc}") from exc

    @staticmethod
    def _is_expired(resp: httpx.Response) -> bool:
        if resp.status_code != 401:
            return False
        try:
            body = resp.json()
        except ValueError:
            return False
        detail = body.get("detail") if isinstance(body, dict) else None
        if isinstance(detail, dict):
            return detail.get("code") == EXPIRED_TOKEN_CODE
        return False

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        credential = await self.auth.get_credential()
        resp = await self._send(method, path, credential, **kwargs)

        if self._is_expired(resp):
            logger.info("Credential expired on %s %s, refreshing once", method, path)
            credential = await self.auth.refresh_credential()
            resp = await self._send(method, path, credential, **kwargs)
            if self._is_expired(resp):
                raise CredentialExpiredError("Credential still expired after refresh", 401)

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientStoreError(f"{method} {path} returned {resp.status_code}", resp.status_code)
        return resp

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.is_success:
            return
        try:
            detail = resp.json().get("detail")
        except ValueError:
            detail = resp.text
        raise RemoteStoreError(f"Remote store error {resp.status_code}: {detail}", resp.status_code)

    # ------------------------------------------------------------------
    # RemoteStore
    # ------------------------------------------------------------------
    async def get(self, chat_id: str) -> Optional[ChatRecord]:
        resp = await self._request("GET", f"/chats/{chat_id}")
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp)
        return self._parse_record(resp.json())

    async def list(self, owner_id: str) -> List[ChatRecord]:
        resp = await self._request("GET", "/chats")
        self._raise_for_status(resp)
        records = []
        for raw in resp.json().get("chats", []):
            record = self._parse_record(raw)
            if record.owner_id not in (None, owner_id):
                logger.warning("Ignoring chat %s owned by another user", record.id)
                continue
            records.append(record)
        logger.info("Fetched %d chats from remote store", len(records))
        return records

    async def put(self, record: ChatRecord) -> None:
        resp = await self._request("PUT", f"/chats/{record.id}", json=record.to_wire())
        self._raise_for_status(resp)

    async def delete(self, chat_id: str) -> None:
        resp = await self._request("DELETE", f"/chats/{chat_id}")
        if resp.status_code == 404:
            # Already gone remotely; deletion is idempotent.
            return
        self._raise_for_status(resp)

    async def get_folders(self, owner_id: str) -> List[ChatFolder]:
        resp = await self._request("GET", "/folders")
        self._raise_for_status(resp)
        return [ChatFolder.model_validate(f) for f in resp.json().get("folders", [])]

    async def put_folders(self, owner_id: str, folders: List[ChatFolder]) -> None:
        payload: Dict[str, Any] = {"folders": [f.to_wire() for f in folders]}
        resp = await self._request("PUT", "/folders", json=payload)
        self._raise_for_status(resp)

    @staticmethod
    def _parse_record(raw: Any) -> ChatRecord:
        try:
            return ChatRecord.model_validate(raw)
        except ValidationError as exc:
            raise RemoteStoreError(f"Malformed chat record from remote store: {exc}") from exc
