import logging
from functools import lru_cache

from google.cloud import firestore

from chatsync.config import get_settings
from chatsync.services.firestore import ChatRepository


@lru_cache()
def get_repo() -> ChatRepository:
    """Provides a ChatRepository instance."""
    settings = get_settings()
    logging.info("Initializing ChatRepository...")
    db = firestore.Client(project=settings.gcp_project_id or None)
    return ChatRepository(
        db,
        chats_collection=settings.chats_collection,
        folders_collection=settings.folders_collection,
    )
