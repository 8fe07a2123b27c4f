from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # --- Google Cloud / Gen AI ---
    gcp_project_id: str = ""
    gcp_location: str = "global"
    model_generation: str = "gemini-2.5-flash"
    model_title: str = "gemini-2.5-flash"
    model_transcription: str = "gemini-2.5-flash"
    system_prompt: Optional[str] = None
    completion_temperature: float = 0.7
    completion_max_output_tokens: int = 10000

    # --- Auth ---
    auth_google_client_id: str = ""
    auth_token_uri: str = "https://oauth2.googleapis.com/token"

    # --- Remote store (HTTP service) ---
    remote_api_base: str = "http://localhost:8000"
    remote_timeout: float = 30.0

    # --- Session store ---
    cache_max_entries: int = 50
    cache_ttl: float = 30 * 60  # seconds an entry may sit untouched
    cache_sweep_interval: float = 5 * 60
    persist_debounce: float = 0.5
    persist_max_attempts: int = 3
    persist_retry_delay: float = 1.0  # multiplied by the attempt number
    progressive_load_batch: int = 10

    # --- Chat Settings ---
    max_chat_title_length: int = 30
    max_message_chars: int = 100_000
    max_attachment_bytes: int = 20 * 1024 * 1024
    max_audio_bytes: int = 25 * 1024 * 1024
    title_min_messages: int = 4
    title_context_messages: int = 6
    title_context_chars: int = 150
    title_max_words: int = 4

    # --- Local fallback slot ---
    data_dir: Path = Path.home() / ".chatsync"

    # --- HTTP service ---
    cors_origins: List[str] = ["http://localhost:3000"]
    chats_collection: str = "chats"
    folders_collection: str = "chat_folders"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def local_slot_path(self) -> Path:
        return self.data_dir / "local_storage.json"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
