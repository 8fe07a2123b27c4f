import base64
import logging
import mimetypes
from typing import List, Optional, Protocol

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types              # pydantic config classes

from ..config import Settings, get_settings
from ..errors import CompletionError
from ..models.domain import Message

logger = logging.getLogger(__name__)

_TITLE_PROMPT = (
    "Based on this conversation, generate a concise, descriptive title "
    "(maximum {max_words} words). Focus on the main topic or task being discussed:\n\n"
    "{summary}\n\nTitle:"
)


class CompletionClient(Protocol):
    """Single request/response completion interface consumed by the controller."""

    async def complete(self, model: str, messages: List[Message]) -> Message:
        ...

    async def generate_title(self, messages: List[Message]) -> str:
        ...


def build_title_prompt(messages: List[Message], context_messages: int = 6,
                       context_chars: int = 150, max_words: int = 4) -> str:
    summary = "\n".join(
        f"{m.role}: {m.text[:context_chars]}" for m in messages[:context_messages]
    )
    return _TITLE_PROMPT.format(max_words=max_words, summary=summary)


def clean_title(raw: str, max_words: int = 4) -> str:
    """First line of the model output, without quotes or a ``Title:`` prefix, capped at ``max_words``."""
    line = next((ln.strip() for ln in raw.strip().splitlines() if ln.strip()), "")
    if line.lower().startswith("title:"):
        line = line[len("title:"):].strip()
    line = line.strip("\"'*` ").rstrip(".")
    return " ".join(line.split()[:max_words])


def _data_url_part(url: str) -> types.Part:
    header, _, payload = url.partition(",")
    mime_type = header[len("data:"):].split(";", 1)[0] or "application/octet-stream"
    return types.Part.from_bytes(data=base64.b64decode(payload), mime_type=mime_type)


def to_contents(messages: List[Message]) -> List[types.Content]:
    """Map chat messages onto Gen AI contents (assistant -> ``model`` role)."""
    contents = []
    for m in messages:
        role = "user" if m.role == "user" else "model"
        if isinstance(m.content, str):
            parts = [types.Part.from_text(text=m.content)]
        else:
            parts = []
            for part in m.content:
                kind = part.get("type")
                if kind == "text":
                    parts.append(types.Part.from_text(text=part.get("text", "")))
                elif kind == "image_url":
                    url = (part.get("image_url") or {}).get("url", "")
                    if url.startswith("data:"):
                        parts.append(_data_url_part(url))
                    elif url:
                        mime_type = mimetypes.guess_type(url)[0] or "image/jpeg"
                        parts.append(types.Part.from_uri(file_uri=url, mime_type=mime_type))
                elif kind == "file":
                    # PDF text is extracted before it reaches the chat
                    name = part.get("name", "attachment")
                    parts.append(types.Part.from_text(text=f"[File: {name}]\n{part.get('text', '')}"))
                else:
                    logger.debug("Skipping unsupported content part %r", kind)
        if parts:
            contents.append(types.Content(role=role, parts=parts))
    return contents


def _response_text(resp) -> Optional[str]:
    if getattr(resp, "text", None):
        return resp.text
    if resp.candidates:
        parts = resp.candidates[0].content.parts if resp.candidates[0].content else None
        if parts and parts[0].text:
            return parts[0].text
    return None


class GenAICompletionClient:
    """Wrapper around the Google Gen AI SDK (chat completion + title summaries)."""

    def __init__(self, client: Optional[genai.Client] = None, settings: Optional[Settings] = None) -> None:
        s = settings or get_settings()
        if client is None:
            logger.info("Initialising Google Gen AI client …")
            client = genai.Client(vertexai=True, project=s.gcp_project_id, location=s.gcp_location)
        # One client for the whole lifetime of the service
        self.client = client
        self.settings = s

    async def _generate(self, model: str, contents, cfg: types.GenerateContentConfig) -> str:
        try:
            resp = await self.client.aio.models.generate_content(
                model=model,
                contents=contents,
                config=cfg,
            )
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            logger.error("Gen AI error: %s", exc)
            raise CompletionError(str(exc)) from exc

        text = _response_text(resp)
        if not text:
            logger.warning("Empty or filtered response: %s", resp)
            raise CompletionError("The model returned an empty response")
        return text

    # ---------- chat completion ------------------------------------------------
    async def complete(self, model: str, messages: List[Message], *,
                       temperature: Optional[float] = None,
                       max_output_tokens: Optional[int] = None) -> Message:
        s = self.settings
        cfg = types.GenerateContentConfig(
            temperature=s.completion_temperature if temperature is None else temperature,
            max_output_tokens=max_output_tokens or s.completion_max_output_tokens,
            system_instruction=s.system_prompt or None,
        )
        text = await self._generate(model, to_contents(messages), cfg)
        return Message(role="assistant", content=text.strip())

    # ---------- title summaries ------------------------------------------------
    async def generate_title(self, messages: List[Message]) -> str:
        s = self.settings
        prompt = build_title_prompt(
            messages, s.title_context_messages, s.title_context_chars, s.title_max_words
        )
        cfg = types.GenerateContentConfig(temperature=0.3, max_output_tokens=64)
        title = clean_title(await self._generate(s.model_title, prompt, cfg), s.title_max_words)
        if not title:
            raise CompletionError("The model returned an empty title")
        return title
