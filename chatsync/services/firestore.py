import logging
from typing import List

from google.api_core.exceptions import Forbidden, NotFound
from google.cloud import firestore

from ..models.domain import ChatFolder, ChatRecord


class ChatRepository:
    """Repository for chat records and folder lists in Firestore.

    Each chat is one document in the chats collection, keyed by chat id and
    carrying its ``ownerId``. Writes replace the whole document, so a repeated
    PUT of the same record is harmless.
    """

    def __init__(self, db: firestore.Client, chats_collection: str = "chats",
                 folders_collection: str = "chat_folders") -> None:
        self.db = db
        self._chats_coll = db.collection(chats_collection)
        self._folders_coll = db.collection(folders_collection)
        logging.info(f"ChatRepository initialized on collections '{chats_collection}', '{folders_collection}'")

    # --------------------------------------------------------------------- #
    # Chats
    # --------------------------------------------------------------------- #
    def list_chats(self, owner_id: str) -> List[ChatRecord]:
        """Lists an owner's chats, most recently updated first."""
        stream = (
            self._chats_coll
            .where(filter=firestore.FieldFilter("ownerId", "==", owner_id))
            .order_by("updatedAt", direction=firestore.Query.DESCENDING)
            .stream()
        )
        chats = []
        for doc in stream:
            data = doc.to_dict()
            data.setdefault("id", doc.id)
            chats.append(ChatRecord.model_validate(data))
        return chats

    def _owned_snapshot(self, owner_id: str, chat_id: str):
        snapshot = self._chats_coll.document(chat_id).get()
        if not snapshot.exists:
            raise NotFound(f"Chat with ID {chat_id} not found")
        if snapshot.to_dict().get("ownerId") != owner_id:
            raise Forbidden(f"Chat {chat_id} belongs to another user")
        return snapshot

    def get_chat(self, owner_id: str, chat_id: str) -> ChatRecord:
        data = self._owned_snapshot(owner_id, chat_id).to_dict()
        data.setdefault("id", chat_id)
        return ChatRecord.model_validate(data)

    def upsert_chat(self, owner_id: str, record: ChatRecord) -> ChatRecord:
        """Creates or fully replaces a chat owned by ``owner_id``."""
        if not record.messages:
            raise ValueError("Refusing to store a chat without messages")
        chat_ref = self._chats_coll.document(record.id)
        existing = chat_ref.get()
        if existing.exists and existing.to_dict().get("ownerId") not in (None, owner_id):
            raise Forbidden(f"Chat {record.id} belongs to another user")

        stored = record.model_copy(update={"owner_id": owner_id})
        chat_ref.set(stored.to_wire())
        logging.debug(f"Saved chat {record.id} ({len(record.messages)} messages)")
        return stored

    def delete_chat(self, owner_id: str, chat_id: str) -> None:
        snapshot = self._owned_snapshot(owner_id, chat_id)
        snapshot.reference.delete()
        logging.info(f"Deleted chat {chat_id}")

    # --------------------------------------------------------------------- #
    # Folders (one document per owner)
    # --------------------------------------------------------------------- #
    def get_folders(self, owner_id: str) -> List[ChatFolder]:
        snapshot = self._folders_coll.document(owner_id).get()
        if not snapshot.exists:
            return []
        return [ChatFolder.model_validate(f) for f in snapshot.to_dict().get("folders", [])]

    def put_folders(self, owner_id: str, folders: List[ChatFolder]) -> None:
        self._folders_coll.document(owner_id).set({
            "ownerId": owner_id,
            "folders": [f.to_wire() for f in folders],
            "updatedAt": firestore.SERVER_TIMESTAMP,
        })
        logging.debug(f"Saved {len(folders)} folders for {owner_id}")
