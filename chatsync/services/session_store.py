"""Authoritative in-memory chat list with optimistic, debounced persistence.

All list mutations go through :class:`SessionStore`. Writes land in memory and
in the LocalCache synchronously; the remote copy follows through a debounced
batch. Everything runs on one asyncio loop, so there is no locking around the
list itself, but any state read after an ``await`` may have been changed by
another task in the meantime and is always re-read from ``self._records``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from ..config import Settings, get_settings
from ..errors import (
    ChatSyncError,
    DeleteFailedError,
    InputValidationError,
    PersistError,
    TransientStoreError,
)
from ..models.domain import ChatFolder, ChatRecord
from .auth_session import AuthSession
from .local_cache import LocalCache
from .local_slot import LocalSlot
from .remote_store import RemoteStore

logger = logging.getLogger(__name__)

ChangeListener = Callable[[List[ChatRecord]], None]
PersistErrorListener = Callable[[PersistError], None]


def dedupe_records(records: Iterable[ChatRecord]) -> List[ChatRecord]:
    """Keep one record per id: the one with the greatest ``updated_at``.

    ``created_at`` stands in when ``updated_at`` is missing. On a tie the
    record seen first wins, so the result is deterministic for a given order.
    """
    newest: Dict[str, ChatRecord] = {}
    for record in records:
        existing = newest.get(record.id)
        if existing is None or record.sort_key > existing.sort_key:
            newest[record.id] = record
    return list(newest.values())


def _newer(resident: ChatRecord, incoming: ChatRecord) -> ChatRecord:
    return incoming if incoming.sort_key > resident.sort_key else resident


class SessionStore:
    """Single holder of the chat list; mediates LocalCache and RemoteStore."""

    def __init__(
        self,
        remote: RemoteStore,
        *,
        auth: Optional[AuthSession] = None,
        cache: Optional[LocalCache] = None,
        local_slot: Optional[LocalSlot] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        s = settings or get_settings()
        self._remote = remote
        self._auth = auth
        self._cache = cache or LocalCache(s.cache_max_entries)
        self._local_slot = local_slot
        self._clock = clock
        self._sleep = sleep

        self.persist_debounce = s.persist_debounce
        self.max_attempts = s.persist_max_attempts
        self.retry_delay = s.persist_retry_delay
        self.load_batch = s.progressive_load_batch
        self.cache_ttl = s.cache_ttl
        self.sweep_interval = s.cache_sweep_interval

        self._records: Dict[str, ChatRecord] = {}
        self._folders: List[ChatFolder] = []

        # Debounced batch state
        self._pending: Set[str] = set()
        self._folders_dirty = False
        self._batch_handle: Optional[asyncio.TimerHandle] = None
        self._write_locks: Dict[str, asyncio.Lock] = {}

        # Mutation sequence per id, used to protect local edits from a
        # progressive load that started before them.
        self._seq = 0
        self._mutations: Dict[str, int] = {}
        # Bumped by reset(); background work from an older epoch stops.
        self._epoch = 0

        self._tasks: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None
        self._listeners: List[ChangeListener] = []
        self._error_listeners: List[PersistErrorListener] = []
        self.needs_refresh = False
        self.failed_ids: Set[str] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start the periodic cache sweep. Requires a running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_cache())

    async def close(self) -> None:
        """Stop timers and push out anything still dirty (page-unload path)."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None
        await self.flush()
        await self.drain()

    async def drain(self) -> None:
        """Wait for every background task spawned so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def reset(self) -> None:
        """Forget everything held for the current user (sign-out teardown)."""
        self._epoch += 1
        if self._batch_handle is not None:
            self._batch_handle.cancel()
            self._batch_handle = None
        anonymous = [i for i in self._pending if i in self._records and self._records[i].owner_id is None]
        if anonymous:
            # Anonymous edits still inside the debounce window.
            self._save_local()
            self._pending.difference_update(anonymous)
        if self._pending:
            logger.info("Dropping %d unsaved chat(s) on reset", len(self._pending))
        self._pending.clear()
        self._folders_dirty = False
        for task in list(self._tasks):
            task.cancel()
        self._records.clear()
        self._folders = []
        self._cache.clear()
        self._mutations.clear()
        self._write_locks.clear()
        self.failed_ids.clear()
        self._changed()

    async def _sweep_cache(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = self._cache.evict_older_than(self.cache_ttl)
            logger.debug("Cache sweep removed %d entries", removed)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def on_persist_error(self, listener: PersistErrorListener) -> None:
        self._error_listeners.append(listener)

    def _changed(self) -> None:
        self.needs_refresh = True
        if not self._listeners:
            return
        snapshot = self.list_chats()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Chat list listener failed")

    def _report(self, error: PersistError) -> None:
        self.failed_ids.add(error.chat_id)
        logger.warning(str(error))
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("Persist error listener failed")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def _owner(self) -> Optional[str]:
        return self._auth.current_user_id() if self._auth is not None else None

    def list_chats(self) -> List[ChatRecord]:
        """Copies of all chats, most recently updated first."""
        ordered = sorted(self._records.values(), key=lambda r: r.sort_key, reverse=True)
        return [r.model_copy(deep=True) for r in ordered]

    def get_local(self, chat_id: str) -> Optional[ChatRecord]:
        cached = self._cache.get(chat_id)
        if cached is not None:
            return cached
        record = self._records.get(chat_id)
        if record is None:
            return None
        self._cache.put(record)
        return record.model_copy(deep=True)

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._records

    async def get(self, chat_id: str) -> Optional[ChatRecord]:
        """Cache, then memory, then (when signed in) the remote store.

        A remote hit joins the in-memory list, so later edits append to the
        stored conversation rather than starting a fresh one.
        """
        local = self.get_local(chat_id)
        if local is not None:
            return local
        if self._owner() is None:
            return None
        epoch = self._epoch
        started = self._seq
        try:
            record = await self._remote.get(chat_id)
        except ChatSyncError as exc:
            logger.warning("Failed to fetch chat %s from remote store: %s", chat_id, exc)
            return None
        if record is None or epoch != self._epoch:
            return None
        self._merge_loaded(record, started)
        self._changed()
        return self.get_local(chat_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def _mark_mutated(self, chat_id: str) -> None:
        self._seq += 1
        self._mutations[chat_id] = self._seq

    def upsert_optimistic(self, record: ChatRecord) -> ChatRecord:
        """Apply ``record`` locally now and schedule its remote write.

        Never waits on the network. Must be called from the event loop
        thread, since it arms the debounce timer.
        """
        resident = self._records.get(record.id)
        stored = record.model_copy(deep=True)
        now = self._clock()

        if stored.created_at is None:
            stored.created_at = resident.created_at if resident and resident.created_at else now
        if stored.updated_at is None:
            stored.updated_at = now
        if resident is not None and resident.updated_at is not None and stored.updated_at < resident.updated_at:
            stored.updated_at = resident.updated_at
        if stored.owner_id is None:
            stored.owner_id = self._owner()

        self._records[stored.id] = stored
        self._cache.put(stored)
        self._mark_mutated(stored.id)
        self._pending.add(stored.id)
        self._arm_batch()
        self._changed()
        return stored.model_copy(deep=True)

    def _arm_batch(self) -> None:
        loop = asyncio.get_running_loop()
        if self._batch_handle is not None:
            self._batch_handle.cancel()
        self._batch_handle = loop.call_later(self.persist_debounce, self._fire_batch)

    def _fire_batch(self) -> None:
        self._batch_handle = None
        ids, folders = self._take_pending()
        if ids or folders:
            self._spawn(self._persist_batch(ids, folders))

    def _take_pending(self) -> tuple[Set[str], bool]:
        ids = set(self._pending)
        folders = self._folders_dirty
        self._pending.clear()
        self._folders_dirty = False
        return ids, folders

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def persist_now(self, chat_id: str) -> bool:
        """Write ``chat_id`` immediately, bypassing the debounce window."""
        self._pending.discard(chat_id)
        if not self._pending and not self._folders_dirty and self._batch_handle is not None:
            self._batch_handle.cancel()
            self._batch_handle = None
        record = self._records.get(chat_id)
        if record is None:
            return False
        owner = self._owner()
        if owner is None:
            self._save_local()
            return True
        if record.owner_id != owner:
            logger.debug("Chat %s is local-only, not syncing", chat_id)
            return False
        return await self._persist_one(chat_id, self._epoch)

    async def flush(self) -> None:
        """Persist every pending change now. Best effort; never raises."""
        if self._batch_handle is not None:
            self._batch_handle.cancel()
            self._batch_handle = None
        ids, folders = self._take_pending()
        if ids or folders:
            await self._persist_batch(ids, folders)

    async def _persist_batch(self, chat_ids: Set[str], folders: bool) -> None:
        epoch = self._epoch
        owner = self._owner()
        remote_ids = []
        for chat_id in chat_ids:
            record = self._records.get(chat_id)
            if record is None or not record.messages:
                continue
            if owner is not None and record.owner_id == owner:
                remote_ids.append(chat_id)
            elif owner is not None:
                logger.debug("Chat %s is local-only, not syncing", chat_id)

        if owner is None:
            if chat_ids:
                self._save_local()
        elif remote_ids:
            logger.info("Batch saving %d chat(s)", len(remote_ids))
            await asyncio.gather(*(self._persist_one(chat_id, epoch) for chat_id in remote_ids))

        if folders:
            await self._save_folders(owner)

    def _write_lock(self, chat_id: str) -> asyncio.Lock:
        lock = self._write_locks.get(chat_id)
        if lock is None:
            lock = self._write_locks[chat_id] = asyncio.Lock()
        return lock

    async def _persist_one(self, chat_id: str, epoch: int) -> bool:
        last_error: Optional[Exception] = None
        attempts = 0
        async with self._write_lock(chat_id):
            for attempt in range(1, self.max_attempts + 1):
                # Re-read every attempt so a retry carries the latest data.
                record = self._records.get(chat_id)
                if epoch != self._epoch or record is None or not record.messages:
                    return False
                attempts = attempt
                try:
                    await self._remote.put(record.model_copy(deep=True))
                    self.failed_ids.discard(chat_id)
                    logger.debug("Saved chat %s", chat_id)
                    return True
                except TransientStoreError as exc:
                    last_error = exc
                    logger.warning(
                        "Error saving chat %s, attempt %d/%d: %s", chat_id, attempt, self.max_attempts, exc
                    )
                    if attempt < self.max_attempts:
                        await self._sleep(self.retry_delay * attempt)
                except ChatSyncError as exc:
                    last_error = exc
                    break
        if last_error is not None and epoch == self._epoch:
            self._report(PersistError(chat_id, attempts, last_error))
        return False

    def _save_local(self) -> None:
        if self._local_slot is None:
            return
        try:
            self._local_slot.save_chats([r for r in self.list_chats() if r.owner_id is None])
        except OSError as exc:
            logger.warning("Failed to save chats to local storage: %s", exc)

    async def _save_folders(self, owner: Optional[str]) -> None:
        folders = [f.model_copy(deep=True) for f in self._folders]
        if owner is None:
            if self._local_slot is not None:
                try:
                    self._local_slot.save_folders(folders)
                except OSError as exc:
                    logger.warning("Failed to save folders to local storage: %s", exc)
            return
        try:
            await self._remote.put_folders(owner, folders)
        except ChatSyncError as exc:
            logger.warning("Failed to save %d folder(s): %s", len(folders), exc)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------
    async def delete(self, chat_id: str) -> None:
        """Remove a chat locally at once, then remotely.

        A remote failure does not restore the chat; it is raised as
        :class:`DeleteFailedError` so the caller can warn or retry.
        """
        record = self._records.pop(chat_id, None)
        self._cache.remove(chat_id)
        self._pending.discard(chat_id)
        self._mark_mutated(chat_id)
        self.failed_ids.discard(chat_id)
        for folder in self._folders:
            if chat_id in folder.chat_ids:
                folder.chat_ids.remove(chat_id)
                folder.updated_at = self._clock()
                self._folders_dirty = True
        if self._folders_dirty:
            self._arm_batch()
        self._changed()

        owner = self._owner()
        if owner is None:
            self._save_local()
            return
        if record is not None and record.owner_id != owner:
            logger.info("Chat %s was local-only, deleted locally", chat_id)
            return
        try:
            # Waits out an in-flight write of the same id, which then sees
            # the record gone and stops retrying.
            async with self._write_lock(chat_id):
                await self._remote.delete(chat_id)
        except ChatSyncError as exc:
            logger.error("Failed to delete chat %s remotely; it may remain on other devices: %s", chat_id, exc)
            raise DeleteFailedError(chat_id, exc) from exc
        logger.info("Deleted chat %s", chat_id)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    async def load_all(self, owner_id: str) -> List[ChatRecord]:
        """Fetch the owner's chats, install the newest slice, merge the rest later.

        Resolves once the first ``load_batch`` chats are in memory; the
        remainder (and folders) are merged by a background task. Chats
        changed locally after the fetch started keep their local version.
        """
        epoch = self._epoch
        started = self._seq
        raw = await self._remote.list(owner_id)
        if epoch != self._epoch:
            logger.info("Session reset while loading chats, discarding result")
            return self.list_chats()

        ordered = sorted(dedupe_records(raw), key=lambda r: r.sort_key, reverse=True)
        head, tail = ordered[: self.load_batch], ordered[self.load_batch:]
        for record in head:
            self._merge_loaded(record, started)
        logger.info("Loaded %d of %d chats, rest in background", len(head), len(ordered))
        self._changed()

        self._spawn(self._load_remainder(owner_id, tail, started, epoch))
        return self.list_chats()

    async def _load_remainder(self, owner_id: str, tail: List[ChatRecord], started: int, epoch: int) -> None:
        for i in range(0, len(tail), self.load_batch):
            await asyncio.sleep(0)
            if epoch != self._epoch:
                return
            for record in tail[i:i + self.load_batch]:
                self._merge_loaded(record, started)
        if tail:
            self._changed()

        try:
            folders = await self._remote.get_folders(owner_id)
        except ChatSyncError as exc:
            logger.warning("Failed to load folders: %s", exc)
            return
        if epoch == self._epoch and not self._folders_dirty:
            self._folders = folders
            self._changed()

    def _merge_loaded(self, record: ChatRecord, started: int) -> None:
        if self._mutations.get(record.id, 0) > started:
            logger.debug("Keeping local version of chat %s changed during load", record.id)
            return
        resident = self._records.get(record.id)
        winner = record if resident is None else _newer(resident, record)
        if winner is not resident:
            self._records[record.id] = winner
            self._cache.put(winner)

    def load_local(self) -> List[ChatRecord]:
        """Degraded mode: load chats and folders from the anonymous local slot."""
        if self._local_slot is None:
            return self.list_chats()
        for record in dedupe_records(self._local_slot.load_chats()):
            resident = self._records.get(record.id)
            winner = record if resident is None else _newer(resident, record)
            self._records[record.id] = winner
        self._folders = self._local_slot.load_folders()
        logger.info("Loaded %d chats from local storage", len(self._records))
        self._changed()
        return self.list_chats()

    async def sync(self, owner_id: str) -> List[ChatRecord]:
        """Push local changes, then reload from the remote store."""
        await self.flush()
        return await self.load_all(owner_id)

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------
    def list_folders(self) -> List[ChatFolder]:
        return [f.model_copy(deep=True) for f in self._folders]

    def _folder(self, folder_id: str) -> ChatFolder:
        for folder in self._folders:
            if folder.id == folder_id:
                return folder
        raise KeyError(folder_id)

    def _folders_changed(self) -> None:
        self._folders_dirty = True
        self._arm_batch()
        self._changed()

    def create_folder(self, name: str) -> ChatFolder:
        name = name.strip()
        if not name:
            raise InputValidationError("Folder name must not be empty")
        folder = ChatFolder(name=name, updated_at=self._clock())
        self._folders.append(folder)
        self._folders_changed()
        return folder.model_copy(deep=True)

    def rename_folder(self, folder_id: str, name: str) -> None:
        name = name.strip()
        if not name:
            raise InputValidationError("Folder name must not be empty")
        folder = self._folder(folder_id)
        if folder.name != name:
            folder.name = name
            folder.updated_at = self._clock()
            self._folders_changed()

    def toggle_folder(self, folder_id: str) -> bool:
        folder = self._folder(folder_id)
        folder.expanded = not folder.expanded
        self._folders_changed()
        return folder.expanded

    def move_chat(self, chat_id: str, folder_id: Optional[str]) -> None:
        """Move a chat into ``folder_id``, or out of every folder when ``None``."""
        record = self._records.get(chat_id)
        if record is None:
            raise KeyError(chat_id)
        target = self._folder(folder_id) if folder_id is not None else None
        now = self._clock()
        for folder in self._folders:
            if chat_id in folder.chat_ids:
                folder.chat_ids.remove(chat_id)
                folder.updated_at = now
        if target is not None:
            target.chat_ids.insert(0, chat_id)
            target.updated_at = now
        self._folders_changed()
        self.upsert_optimistic(record.model_copy(update={"folder_id": folder_id, "updated_at": now}))

    async def delete_folder(self, folder_id: str) -> None:
        """Delete a folder together with its chats.

        Every chat is removed locally even if some remote deletes fail; the
        first failure is raised afterwards.
        """
        folder = self._folder(folder_id)
        self._folders = [f for f in self._folders if f.id != folder_id]
        self._folders_changed()
        failures: List[DeleteFailedError] = []
        for chat_id in list(folder.chat_ids):
            try:
                await self.delete(chat_id)
            except DeleteFailedError as exc:
                failures.append(exc)
        if failures:
            raise failures[0]


def bind_session(auth: AuthSession, store: SessionStore) -> Callable[[], None]:
    """Keep ``store`` in step with sign-in/sign-out transitions.

    Sign-out clears every chat held for the previous user and falls back to
    the anonymous local slot; sign-in loads the new user's chats.
    """

    async def on_auth_change(user_id: Optional[str]) -> None:
        store.reset()
        if user_id is None:
            store.load_local()
            return
        try:
            await store.load_all(user_id)
        except ChatSyncError as exc:
            logger.warning("Failed to load chats for %s: %s", user_id, exc)

    return auth.subscribe(on_auth_change)
