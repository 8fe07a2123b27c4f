from typing import List

from pydantic import BaseModel

from .domain import ChatFolder, ChatRecord


class ChatListResponse(BaseModel):
    chats: List[ChatRecord] = []


class SaveChatResponse(BaseModel):
    success: bool = True
    id: str


class FolderList(BaseModel):
    folders: List[ChatFolder] = []
