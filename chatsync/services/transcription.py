import logging
from typing import Optional, Protocol

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ..config import Settings, get_settings
from ..errors import TranscriptionError

logger = logging.getLogger(__name__)

_TRANSCRIBE_PROMPT = "Transcribe this audio verbatim. Reply with the transcript only."


class Transcriber(Protocol):
    async def transcribe(self, audio: bytes, mime_type: str, model: Optional[str] = None) -> str:
        ...


class GenAITranscriber:
    """Speech-to-text through a Gen AI model that accepts audio parts."""

    def __init__(self, client: Optional[genai.Client] = None, settings: Optional[Settings] = None) -> None:
        s = settings or get_settings()
        self.client = client or genai.Client(vertexai=True, project=s.gcp_project_id, location=s.gcp_location)
        self.model = s.model_transcription

    async def transcribe(self, audio: bytes, mime_type: str, model: Optional[str] = None) -> str:
        contents = [
            types.Part.from_text(text=_TRANSCRIBE_PROMPT),
            types.Part.from_bytes(data=audio, mime_type=mime_type),
        ]
        try:
            resp = await self.client.aio.models.generate_content(
                model=model or self.model,
                contents=contents,
                config=types.GenerateContentConfig(temperature=0.0),
            )
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            logger.error("Transcription error: %s", exc)
            raise TranscriptionError(str(exc)) from exc

        text = (getattr(resp, "text", None) or "").strip()
        if not text:
            raise TranscriptionError("No speech recognised")
        return text
