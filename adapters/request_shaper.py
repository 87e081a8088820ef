"""Request shaper: turns streaming params + chat history into a transport request.

Pure data transform: no I/O, no validation beyond what the types imply.
The resulting RequestOptions is handed to chat_stream.stream_chat_completion().
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional, Union

from chat_types import CancelToken, ChatMessage, RequestOptions, StreamingParams

MessageLike = Union[ChatMessage, Dict[str, Any]]


def _convert_messages(messages: Iterable[MessageLike]) -> List[Dict[str, Any]]:
    """Convert messages to the OpenAI wire format, preserving order."""
    result = []
    for msg in messages:
        if isinstance(msg, ChatMessage):
            result.append(msg.to_dict())
        else:
            result.append(dict(msg))
    return result


def build_request_body(params: StreamingParams, messages: Iterable[MessageLike]) -> Dict[str, Any]:
    """Build the chat completion body: model, pass-through params, messages, stream=True."""
    body: Dict[str, Any] = {"model": params.model}
    for key, value in params.extra.items():
        if key not in ("model", "api_key"):
            body[key] = value
    body["messages"] = _convert_messages(messages)
    body["stream"] = True
    return body


def build_request_options(
    params: StreamingParams,
    messages: Iterable[MessageLike],
    cancel_token: Optional[CancelToken] = None,
) -> RequestOptions:
    """Build the POST request descriptor for a streaming chat completion."""
    return RequestOptions(
        headers={
            "Content-Type": "application/json",
            "Authorization": f"Bearer {params.api_key}",
        },
        method="POST",
        body=json.dumps(build_request_body(params, messages)),
        cancel_token=cancel_token,
    )
