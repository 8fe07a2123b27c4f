"""Bounded LRU cache of chat records with age-based eviction."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple

from ..models.domain import ChatRecord

logger = logging.getLogger(__name__)


class LocalCache:
    """In-memory chat cache keyed by chat id.

    Entries are ordered least- to most-recently accessed; both ``get`` and
    ``put`` count as an access and refresh the entry's touch time. Records
    are copied on the way in and out so callers cannot mutate cached state.
    """

    def __init__(self, max_entries: int = 50, clock: Callable[[], float] = time.monotonic) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[ChatRecord, float]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._entries

    def get(self, chat_id: str) -> Optional[ChatRecord]:
        entry = self._entries.get(chat_id)
        if entry is None:
            return None
        record, _ = entry
        self._entries[chat_id] = (record, self._clock())
        self._entries.move_to_end(chat_id)
        return record.model_copy(deep=True)

    def put(self, record: ChatRecord) -> None:
        if record.id in self._entries:
            del self._entries[record.id]
        elif len(self._entries) >= self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Cache full, evicted least recently used chat %s", evicted)
        self._entries[record.id] = (record.model_copy(deep=True), self._clock())

    def remove(self, chat_id: str) -> None:
        self._entries.pop(chat_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def evict_older_than(self, max_age: float) -> int:
        """Drop entries untouched for longer than ``max_age`` seconds; return how many."""
        cutoff = self._clock() - max_age
        stale = [chat_id for chat_id, (_, touched) in self._entries.items() if touched < cutoff]
        for chat_id in stale:
            del self._entries[chat_id]
        if stale:
            logger.debug("Cache cleanup removed %d entries, %d left", len(stale), len(self._entries))
        return len(stale)
