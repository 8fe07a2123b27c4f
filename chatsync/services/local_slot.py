"""Unauthenticated local key-value persistence used when nobody is signed in."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from pydantic import ValidationError

from ..models.domain import ChatFolder, ChatRecord

logger = logging.getLogger(__name__)

CHAT_HISTORY_KEY = "chat_history"
CHAT_FOLDERS_KEY = "chat_folders"


class LocalSlot:
    """A JSON file holding named slots, each a JSON value.

    This is a degraded mode for anonymous use, not a mirror of the remote
    store: records saved here carry no owner and never sync.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _read_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read local slot file %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> Any:
        return self._read_all().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._read_all()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        tmp.replace(self.path)

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------
    def load_chats(self) -> List[ChatRecord]:
        records = []
        for raw in self.get(CHAT_HISTORY_KEY) or []:
            try:
                records.append(ChatRecord.model_validate(raw))
            except ValidationError as exc:
                logger.warning("Skipping malformed local chat entry: %s", exc)
        return records

    def save_chats(self, records: List[ChatRecord]) -> None:
        self.set(CHAT_HISTORY_KEY, [r.to_wire() for r in records if r.messages])
        logger.info("Saved %d chats to local storage", len(records))

    def load_folders(self) -> List[ChatFolder]:
        folders = []
        for raw in self.get(CHAT_FOLDERS_KEY) or []:
            try:
                folders.append(ChatFolder.model_validate(raw))
            except ValidationError as exc:
                logger.warning("Skipping malformed local folder entry: %s", exc)
        return folders

    def save_folders(self, folders: List[ChatFolder]) -> None:
        self.set(CHAT_FOLDERS_KEY, [f.to_wire() for f in folders])
