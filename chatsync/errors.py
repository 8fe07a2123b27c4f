"""Error taxonomy shared by the store, the controller and the HTTP layer.

Callers discriminate failures by class: transient store errors are retried,
validation errors are surfaced immediately, and nothing here relies on
matching message strings.
"""

from __future__ import annotations

from typing import Optional


class ChatSyncError(Exception):
    """Base class for every error raised by chatsync."""


class RemoteStoreError(ChatSyncError):
    """Terminal remote store failure (bad request, forbidden, malformed reply)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientStoreError(RemoteStoreError):
    """Remote store unreachable or temporarily failing; safe to retry."""


class CredentialExpiredError(RemoteStoreError):
    """The bearer credential was rejected as expired even after one refresh."""


class CredentialRefreshError(ChatSyncError):
    """The auth collaborator could not produce a fresh credential."""


class DeleteFailedError(ChatSyncError):
    """A chat was removed locally but the remote delete did not go through."""

    def __init__(self, chat_id: str, cause: Exception) -> None:
        super().__init__(f"Chat {chat_id} was deleted locally but not remotely: {cause}")
        self.chat_id = chat_id
        self.cause = cause


class PersistError(ChatSyncError):
    """Report for a remote write that failed every attempt."""

    def __init__(self, chat_id: str, attempts: int, cause: Exception) -> None:
        super().__init__(f"Failed to persist chat {chat_id} after {attempts} attempt(s): {cause}")
        self.chat_id = chat_id
        self.attempts = attempts
        self.cause = cause


class InputValidationError(ChatSyncError):
    """Input rejected before any network call (empty message, oversized upload)."""


class CompletionError(ChatSyncError):
    """The completion interface returned an error or an unusable reply."""


class TranscriptionError(ChatSyncError):
    """The transcription interface failed."""
