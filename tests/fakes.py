"""In-memory collaborators shared by the test modules."""

import asyncio
from typing import Dict, List, Optional

from chatsync.config import Settings
from chatsync.errors import CompletionError, TransientStoreError
from chatsync.models.domain import ChatFolder, ChatRecord, Message
from chatsync.services.auth_session import AuthSession
from chatsync.services.remote_store import RemoteStore


def make_settings(**overrides) -> Settings:
    values = dict(
        persist_debounce=0.01,
        persist_retry_delay=0.0,
        progressive_load_batch=10,
        cache_max_entries=50,
    )
    values.update(overrides)
    return Settings(**values)


def chat(chat_id: str, n: int = 1, *, updated_at: Optional[float] = None,
         created_at: Optional[float] = None, owner_id: Optional[str] = None) -> ChatRecord:
    messages = [
        Message(role="user" if i % 2 == 0 else "assistant", content=f"message {i}")
        for i in range(n)
    ]
    return ChatRecord(id=chat_id, messages=messages, updated_at=updated_at,
                      created_at=created_at, owner_id=owner_id)


class FakeAuth(AuthSession):
    def __init__(self, user_id: Optional[str] = "u1") -> None:
        super().__init__()
        self.user_id = user_id
        self.token = "stale-token"
        self.refreshes = 0

    def current_user_id(self) -> Optional[str]:
        return self.user_id

    async def get_credential(self) -> str:
        return self.token

    async def refresh_credential(self) -> str:
        self.refreshes += 1
        self.token = f"fresh-token-{self.refreshes}"
        return self.token


class FakeRemote(RemoteStore):
    def __init__(self, records: Optional[List[ChatRecord]] = None) -> None:
        self.records: Dict[str, ChatRecord] = {}
        self.listing: List[ChatRecord] = list(records or [])
        self.puts: List[ChatRecord] = []
        self.put_attempts = 0
        self.put_errors: List[Exception] = []
        self.deletes: List[str] = []
        self.delete_error: Optional[Exception] = None
        self.folders: List[ChatFolder] = []
        self.folder_puts = 0

    async def get(self, chat_id: str) -> Optional[ChatRecord]:
        return self.records.get(chat_id)

    async def list(self, owner_id: str) -> List[ChatRecord]:
        return [r.model_copy(deep=True) for r in self.listing]

    async def put(self, record: ChatRecord) -> None:
        self.put_attempts += 1
        if self.put_errors:
            raise self.put_errors.pop(0)
        self.puts.append(record)
        self.records[record.id] = record

    async def delete(self, chat_id: str) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.deletes.append(chat_id)
        self.records.pop(chat_id, None)

    async def get_folders(self, owner_id: str) -> List[ChatFolder]:
        return list(self.folders)

    async def put_folders(self, owner_id: str, folders: List[ChatFolder]) -> None:
        self.folder_puts += 1
        self.folders = list(folders)


def transient(n: int) -> List[Exception]:
    return [TransientStoreError("service unavailable", 503) for _ in range(n)]


class GatedCompletion:
    """Completion client whose replies are released by the test."""

    def __init__(self, title: str = "Trip Planning") -> None:
        self.gates: List[asyncio.Future] = []
        self.calls: List[List[Message]] = []
        self.title = title
        self.title_error: Optional[Exception] = None
        self.title_calls = 0

    async def complete(self, model: str, messages: List[Message]) -> Message:
        self.calls.append(list(messages))
        gate = asyncio.get_running_loop().create_future()
        self.gates.append(gate)
        return await gate

    async def generate_title(self, messages: List[Message]) -> str:
        self.title_calls += 1
        if self.title_error is not None:
            raise self.title_error
        return self.title

    async def wait_for_call(self, count: int = 1) -> asyncio.Future:
        while len(self.gates) < count:
            await asyncio.sleep(0)
        return self.gates[count - 1]

    def reply(self, index: int, text: str) -> None:
        self.gates[index].set_result(Message(role="assistant", content=text))

    def fail(self, index: int, message: str = "model unavailable") -> None:
        self.gates[index].set_exception(CompletionError(message))


class EchoCompletion:
    """Completion client that answers immediately."""

    def __init__(self, title: str = "Trip Planning") -> None:
        self.title = title
        self.title_calls = 0

    async def complete(self, model: str, messages: List[Message]) -> Message:
        return Message(role="assistant", content=f"echo: {messages[-1].text}")

    async def generate_title(self, messages: List[Message]) -> str:
        self.title_calls += 1
        return self.title
