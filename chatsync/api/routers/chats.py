import logging
from fastapi import APIRouter, Depends, HTTPException, status, Path
from google.api_core.exceptions import Forbidden, NotFound

from chatsync.api.auth import get_current_user_id
from chatsync.api.deps import get_repo
from chatsync.models.api_io import ChatListResponse, FolderList, SaveChatResponse
from chatsync.models.domain import ChatRecord
from chatsync.services.firestore import ChatRepository

router = APIRouter(prefix="/chats", tags=["chats"])
folders_router = APIRouter(prefix="/folders", tags=["folders"])


@router.get("", response_model=ChatListResponse)
async def list_chats(
    user_id: str = Depends(get_current_user_id),
    repo: ChatRepository = Depends(get_repo),
):
    """Retrieves all of the caller's chats, most recently updated first."""
    try:
        return ChatListResponse(chats=repo.list_chats(user_id))
    except Exception as e:
        logging.error(f"Error listing chats for {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to retrieve chat list.")


@router.get("/{chat_id}", response_model=ChatRecord)
async def get_chat(
    chat_id: str = Path(..., title="The ID of the chat"),
    user_id: str = Depends(get_current_user_id),
    repo: ChatRepository = Depends(get_repo),
):
    try:
        return repo.get_chat(user_id, chat_id)
    except NotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Chat {chat_id} not found.")
    except Forbidden:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to read this chat.")


@router.put("/{chat_id}", response_model=SaveChatResponse)
async def save_chat(
    record: ChatRecord,
    chat_id: str = Path(..., title="The ID of the chat"),
    user_id: str = Depends(get_current_user_id),
    repo: ChatRepository = Depends(get_repo),
):
    """Creates or replaces a chat. Repeating the same PUT is harmless."""
    if record.id != chat_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Chat id in path and body differ.")
    try:
        repo.upsert_chat(user_id, record)
    except Forbidden:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to modify this chat.")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logging.error(f"Error saving chat {chat_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to save chat.")
    return SaveChatResponse(id=chat_id)


@router.delete("/{chat_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_chat(
    chat_id: str = Path(..., title="The ID of the chat to delete"),
    user_id: str = Depends(get_current_user_id),
    repo: ChatRepository = Depends(get_repo),
):
    try:
        repo.delete_chat(user_id, chat_id)
    except NotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Chat {chat_id} not found.")
    except Forbidden:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to delete this chat.")
    except Exception as e:
        logging.error(f"Error deleting chat {chat_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to delete chat.")


@folders_router.get("", response_model=FolderList)
async def get_folders(
    user_id: str = Depends(get_current_user_id),
    repo: ChatRepository = Depends(get_repo),
):
    return FolderList(folders=repo.get_folders(user_id))


@folders_router.put("", response_model=FolderList)
async def put_folders(
    body: FolderList,
    user_id: str = Depends(get_current_user_id),
    repo: ChatRepository = Depends(get_repo),
):
    try:
        repo.put_folders(user_id, body.folders)
    except Exception as e:
        logging.error(f"Error saving folders for {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to save folders.")
    return body
