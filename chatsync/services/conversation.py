"""Conversation controller: one user message -> one model reply round trip.

The controller owns which chat is on screen. Replies are fenced: a reply is
shown only if its request token is still current *and* the user is still
looking at that chat; otherwise it is quietly appended to the stored chat it
belongs to.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

from ..config import Settings, get_settings
from ..errors import CompletionError, InputValidationError, TranscriptionError
from ..models.domain import (
    ChatRecord,
    ExchangeResult,
    Message,
    Overlay,
    generate_chat_id,
    provisional_title,
)
from .auth_session import AuthSession
from .llm_service import CompletionClient
from .request_fence import RequestFence
from .session_store import SessionStore
from .transcription import Transcriber

logger = logging.getLogger(__name__)


class ConversationView(Protocol):
    """What the controller needs from whatever renders the active chat."""

    def show_message(self, chat_id: str, message: Message) -> None:
        ...

    def show_error(self, chat_id: str, text: str) -> None:
        ...

    def set_input_enabled(self, enabled: bool) -> None:
        ...


class LoggingView:
    """Headless view that only logs; used when no UI is attached."""

    input_enabled = True

    def show_message(self, chat_id: str, message: Message) -> None:
        logger.info("[%s] %s: %s", chat_id, message.role, message.text[:80])

    def show_error(self, chat_id: str, text: str) -> None:
        logger.error("[%s] %s", chat_id, text)

    def set_input_enabled(self, enabled: bool) -> None:
        self.input_enabled = enabled


class ConversationController:
    def __init__(
        self,
        store: SessionStore,
        completion: CompletionClient,
        *,
        fence: Optional[RequestFence] = None,
        transcriber: Optional[Transcriber] = None,
        view: Optional[ConversationView] = None,
        settings: Optional[Settings] = None,
        clock=time.time,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.completion = completion
        self.fence = fence or RequestFence()
        self.transcriber = transcriber
        self.view = view or LoggingView()
        self._clock = clock

        self.model = self.settings.model_generation
        self.active_chat_id: Optional[str] = None
        self.active_folder_id: Optional[str] = None
        self._title_tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------
    def start_new_chat(self, folder_id: Optional[str] = None) -> None:
        """Show an empty conversation; its id is allocated on the first send."""
        self.active_chat_id = None
        self.active_folder_id = folder_id

    def reset(self) -> None:
        """Forget the active chat and every outstanding request token."""
        self.fence.clear_all()
        self.start_new_chat()

    def bind(self, auth: AuthSession) -> Callable[[], None]:
        """Reset whenever the signed-in user changes; returns the unsubscribe hook."""

        def on_auth_change(user_id: Optional[str]) -> None:
            logger.debug("Auth changed to %s, resetting conversation", user_id or "signed-out")
            self.reset()

        return auth.subscribe(on_auth_change)

    async def open_chat(self, chat_id: str) -> Optional[ChatRecord]:
        record = await self.store.get(chat_id)
        if record is None:
            logger.warning("Chat %s not found, starting a new chat", chat_id)
            self.start_new_chat()
            return None
        self.active_chat_id = chat_id
        self.active_folder_id = record.folder_id
        return record

    async def delete_chat(self, chat_id: str) -> None:
        """Delete a chat; a :class:`DeleteFailedError` still leaves it gone locally."""
        self.fence.clear(chat_id)
        try:
            await self.store.delete(chat_id)
        finally:
            if self.active_chat_id == chat_id:
                self.start_new_chat()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def _validate(self, text: str, attachments: Optional[List[Dict[str, Any]]]):
        text = (text or "").strip()
        attachments = attachments or []
        if not text and not attachments:
            raise InputValidationError("Message is empty")
        if len(text) > self.settings.max_message_chars:
            raise InputValidationError(
                f"Message is too long ({len(text)} > {self.settings.max_message_chars} characters)"
            )
        for part in attachments:
            payload = (part.get("image_url") or {}).get("url") or part.get("text") or ""
            if len(payload) > self.settings.max_attachment_bytes:
                raise InputValidationError(f"Attachment {part.get('name', 'upload')} is too large")
        if not attachments:
            return text
        return ([{"type": "text", "text": text}] if text else []) + list(attachments)

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------
    def _is_current(self, chat_id: str, token: str) -> bool:
        return self.fence.is_current(chat_id, token) and self.active_chat_id == chat_id

    async def send(self, text: str, *, attachments: Optional[List[Dict[str, Any]]] = None) -> ExchangeResult:
        """Append a user message, ask the model, and file the reply.

        Raises :class:`InputValidationError` before any network call when the
        input is rejected. Completion failures are returned in the result,
        not raised.
        """
        content = self._validate(text, attachments)

        created = self.active_chat_id is None
        if created:
            self.active_chat_id = generate_chat_id()
            logger.info("Started chat %s", self.active_chat_id)
        chat_id = self.active_chat_id

        record = self.store.get_local(chat_id) or ChatRecord(id=chat_id, folder_id=self.active_folder_id)
        record.messages.append(Message(role="user", content=content))
        record.model = self.model
        if not record.smart_title:
            record.title = provisional_title(record.messages, self.settings.max_chat_title_length)
        record.updated_at = self._clock()
        self.store.upsert_optimistic(record)
        if created and self.active_folder_id is not None:
            try:
                self.store.move_chat(chat_id, self.active_folder_id)
            except KeyError:
                logger.warning("Folder %s no longer exists, chat %s left unfiled", self.active_folder_id, chat_id)
                self.active_folder_id = None

        token = self.fence.issue(chat_id)
        history = list(record.messages)
        self.view.set_input_enabled(False)
        try:
            try:
                reply = await self.completion.complete(record.model, history)
            except CompletionError as exc:
                return self._handle_failure(chat_id, token, exc)
            return self._handle_reply(chat_id, token, reply)
        finally:
            self.view.set_input_enabled(True)

    def _handle_reply(self, chat_id: str, token: str, reply: Message) -> ExchangeResult:
        current = self._is_current(chat_id, token)
        own_token = self.fence.is_current(chat_id, token)

        # Re-read: the chat may have changed or vanished while we waited.
        record = self.store.get_local(chat_id)
        if record is None:
            logger.info("Chat %s was deleted while awaiting a reply, dropping it", chat_id)
            if own_token:
                self.fence.clear(chat_id)
            return ExchangeResult(chat_id=chat_id, reply=reply, displayed=False)

        record.messages.append(reply)
        record.updated_at = self._clock()
        self.store.upsert_optimistic(record)

        if current:
            self.view.show_message(chat_id, reply)
        elif own_token:
            logger.info("Reply saved to chat %s but not displayed (user in a different chat)", chat_id)
        else:
            logger.info("Reply saved to chat %s but superseded by a newer request", chat_id)
        if own_token:
            self.fence.clear(chat_id)

        self._maybe_regenerate_title(chat_id)
        return ExchangeResult(chat_id=chat_id, reply=reply, displayed=current)

    def _handle_failure(self, chat_id: str, token: str, exc: CompletionError) -> ExchangeResult:
        if self._is_current(chat_id, token):
            self.view.show_error(chat_id, f"Error: {exc}")
            self.fence.clear(chat_id)
            return ExchangeResult(chat_id=chat_id, error=str(exc), displayed=True)

        logger.info("Request for chat %s failed after the user moved on: %s", chat_id, exc)
        if self.fence.is_current(chat_id, token):
            self.fence.clear(chat_id)
        return ExchangeResult(chat_id=chat_id, error=str(exc), displayed=False)

    # ------------------------------------------------------------------
    # Titles
    # ------------------------------------------------------------------
    def _maybe_regenerate_title(self, chat_id: str) -> None:
        record = self.store.get_local(chat_id)
        if record is None or record.smart_title or chat_id in self._title_tasks:
            return
        if len(record.messages) < self.settings.title_min_messages:
            return
        task = asyncio.get_running_loop().create_task(self._regenerate_title(chat_id, record.messages))
        self._title_tasks[chat_id] = task
        task.add_done_callback(lambda _t, cid=chat_id: self._title_tasks.pop(cid, None))

    async def _regenerate_title(self, chat_id: str, messages: List[Message]) -> None:
        try:
            title = await self.completion.generate_title(messages)
        except CompletionError as exc:
            logger.info("Smart title generation failed for %s: %s", chat_id, exc)
            return
        record = self.store.get_local(chat_id)
        if record is None:
            return
        record.title = title
        record.smart_title = True
        record.updated_at = self._clock()
        self.store.upsert_optimistic(record)
        logger.debug("Chat %s titled %r", chat_id, title)

    async def drain(self) -> None:
        """Wait for pending title generations."""
        if self._title_tasks:
            await asyncio.gather(*list(self._title_tasks.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    # Overlays & voice
    # ------------------------------------------------------------------
    def save_overlays(self, overlays: List[Overlay]) -> None:
        if self.active_chat_id is None:
            return
        record = self.store.get_local(self.active_chat_id)
        if record is None or not record.messages:
            return
        record.overlays = list(overlays)
        record.updated_at = self._clock()
        self.store.upsert_optimistic(record)

    async def dictate(self, audio: bytes, mime_type: str = "audio/webm") -> str:
        """Transcribe recorded audio into text for the message input."""
        if not audio:
            raise InputValidationError("Recording is empty")
        if len(audio) > self.settings.max_audio_bytes:
            raise InputValidationError("Recording is too large")
        if self.transcriber is None:
            raise TranscriptionError("No transcriber configured")
        return await self.transcriber.transcribe(audio, mime_type)
