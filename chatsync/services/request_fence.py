"""Per-conversation fencing tokens for in-flight completion requests."""

from __future__ import annotations

import logging
import secrets
from typing import Dict

logger = logging.getLogger(__name__)


class RequestFence:
    """Tracks the one current request token per conversation id.

    Issuing a token makes every earlier token for the same id stale at once.
    Nothing here cancels network calls; response handlers consult
    :py:meth:`is_current` to decide whether their result may touch the UI.
    """

    def __init__(self) -> None:
        self._tokens: Dict[str, str] = {}

    def issue(self, conversation_id: str) -> str:
        token = secrets.token_hex(8)
        previous = self._tokens.get(conversation_id)
        self._tokens[conversation_id] = token
        if previous is not None:
            logger.debug("Request token for %s superseded", conversation_id)
        return token

    def is_current(self, conversation_id: str, token: str) -> bool:
        stored = self._tokens.get(conversation_id)
        return stored is not None and stored == token

    def clear(self, conversation_id: str) -> None:
        self._tokens.pop(conversation_id, None)

    def clear_all(self) -> None:
        self._tokens.clear()
