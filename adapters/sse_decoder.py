"""
sse_decoder.py: Frame layer for OpenAI-style chat completion streams

Turns raw byte chunks (httpx response.aiter_bytes()) into complete event
frames. Only the subset of Server-Sent Events the chat endpoints use is
handled: events separated by a blank line ("\\n\\n"), payload carried on a
single `data:` field, `[DONE]` as terminal marker.

Handles: events spanning multiple chunks, several events in one chunk, and
multi-byte UTF-8 characters split across chunk boundaries.
"""

import codecs
import re

DONE_MARKER = "[DONE]"

# Event boundary: one newline, repeated twice.
FRAME_SEPARATOR = "\n\n"

# Leading data field marker, optionally preceded by stray whitespace/newline.
_DATA_FIELD_RE = re.compile(r"^\s*data:\s*")


class FrameBuffer:
    """Session-owned text buffer that yields complete frames.

    One incremental UTF-8 decoder lives for the whole session, so a
    character split across two reads is decoded once both halves arrived.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Text received but not yet part of a complete frame."""
        return self._buffer

    def feed(self, chunk: bytes) -> list[str]:
        """Append a chunk and return the frames it completed, in order.

        An empty chunk is a no-op. The trailing, possibly incomplete
        segment stays buffered until a later chunk terminates it.
        """
        if not chunk:
            return []

        self._buffer += self._decoder.decode(chunk)
        segments = self._buffer.split(FRAME_SEPARATOR)

        # Keep the last segment in the buffer in case it's incomplete
        self._buffer = segments.pop()
        return segments

    def close(self) -> str:
        """Flush the decoder and return (and discard) any unterminated remainder."""
        remainder = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        self._decoder.reset()
        return remainder


def strip_data_field(frame: str) -> str:
    """Strip the `data:` field marker and surrounding whitespace from a frame."""
    return _DATA_FIELD_RE.sub("", frame, count=1).strip()


def is_done_marker(payload: str) -> bool:
    """True if a stripped payload is the terminal marker."""
    return payload == DONE_MARKER
