"""Shared value types for the chat stream adapters.

ChatMessage is the wire shape exchanged with OpenAI-compatible chat
completion endpoints. StreamingParams carries auth + model + any extra
provider parameters. RequestOptions is what the request shaper hands to
the transport. CancelToken is the cooperative abort signal threaded from
the caller through the read loop.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Role tags seen on the wire. Roles are free-form strings; these are the common ones.
ROLE_SYSTEM = "system"
ROLE_USER = "user"

ChatRole = str

DEFAULT_BASE_URL = "https://api.openai.com/v1"


@dataclass(frozen=True)
class ChatMessage:
    """A single chat message (role + content)."""
    role: ChatRole = ""
    content: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class StreamingParams:
    """Auth, model and pass-through provider parameters for one request.

    `extra` holds everything the provider accepts besides model/messages
    (temperature, max_tokens, stop, ...). base_url only selects the endpoint
    and is never sent in the body.
    """
    api_key: str
    model: str
    extra: Dict[str, Any] = field(default_factory=dict)
    base_url: str = DEFAULT_BASE_URL

    @property
    def chat_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/chat/completions"


class CancelToken:
    """Cooperative cancellation signal for a streaming session."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class RequestOptions:
    """Transport request descriptor produced by the request shaper."""
    headers: Dict[str, str]
    method: str
    body: str
    cancel_token: Optional[CancelToken] = None
