"""Frame splitting for the agent event stream.

The RovoDev serve process streams server-sent events::

    event: tool-call\\r\\n
    data: {"tool_name": "bash", "args": "...", "tool_call_id": "c1"}\\r\\n
    \\r\\n

Newer builds put ``event_kind`` inside the JSON and send only ``data:``
lines. Frames are separated by a blank line. Lines starting with ``:`` are
keep-alive comments (``: ping - ...``) and are dropped.

Recorded sessions and test fixtures may instead use JSON lines, one record
per line. Both layouts are handled here; turning a frame into an event is the
parser's job.
"""

from __future__ import annotations

import codecs
import re
from collections.abc import AsyncIterable, AsyncIterator

SSE = "sse"
JSONL = "jsonl"
FRAMINGS = (SSE, JSONL)

_SSE_SEPARATOR = re.compile(r"\r?\n\r?\n")
_LINE_SEPARATOR = re.compile(r"\r?\n")
_SSE_FIELDS = ("event", "data", "id", "retry")


class FramingError(Exception):
    """Raised for an unknown framing mode."""


class FrameBuffer:
    """Accumulates raw stream text and yields complete frames.

    Incomplete trailing text stays buffered until more data arrives or
    flush() is called at end of stream.

    Example:
        >>> buf = FrameBuffer()
        >>> buf.feed('data: {"event_kind": "close"}\\n')
        []
        >>> buf.feed("\\n")
        ['data: {"event_kind": "close"}']
    """

    def __init__(self, framing: str = SSE) -> None:
        if framing not in FRAMINGS:
            raise FramingError(f"Unknown framing {framing!r}, expected one of {FRAMINGS}")
        self._framing = framing
        self._buffer = ""

    @property
    def framing(self) -> str:
        return self._framing

    @property
    def has_pending(self) -> bool:
        """True when buffered text has not formed a complete frame yet."""
        return bool(self._buffer.strip())

    def feed(self, data: str) -> list[str]:
        """Add stream text, returning every frame it completes."""
        self._buffer += data
        separator = _SSE_SEPARATOR if self._framing == SSE else _LINE_SEPARATOR
        parts = separator.split(self._buffer)
        # The last element may be a partial frame; keep it for the next feed
        self._buffer = parts.pop()
        frames = (self._clean(part) for part in parts)
        return [frame for frame in frames if frame]

    def flush(self) -> list[str]:
        """Return any leftover text as a final frame.

        A truncated frame is still handed on; the parser reports it as a
        parsing error instead of this layer dropping it.
        """
        remainder, self._buffer = self._buffer, ""
        frame = self._clean(remainder)
        return [frame] if frame else []

    def _clean(self, frame: str) -> str:
        if self._framing == JSONL:
            return frame.strip()
        lines = [line for line in _LINE_SEPARATOR.split(frame) if not line.startswith(":")]
        return "\n".join(lines).strip()


def is_sse_frame(frame: str) -> bool:
    """Check whether a frame uses SSE field lines rather than bare JSON."""
    first = frame.lstrip().split("\n", 1)[0]
    name = first.split(":", 1)[0].strip()
    return ":" in first and name in _SSE_FIELDS


def decode_sse_frame(frame: str) -> tuple[str | None, str]:
    """Split an SSE frame into its event name and data payload.

    Multiple ``data:`` lines are joined with newlines, as EventSource does.
    ``id`` and ``retry`` fields are ignored.

    Returns:
        (event name or None, data text)
    """
    event_name: str | None = None
    data_lines: list[str] = []

    for line in _LINE_SEPARATOR.split(frame):
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event_name = value.strip() or None
        elif name == "data":
            data_lines.append(value)

    return event_name, "\n".join(data_lines)


async def iter_frames(
    chunks: AsyncIterable[bytes | str],
    framing: str = SSE,
) -> AsyncIterator[str]:
    """Yield complete frames from an async stream of raw chunks.

    Bytes are decoded as UTF-8 incrementally, so multi-byte characters split
    across chunks are handled. The trailing remainder is flushed at EOF.
    """
    buffer = FrameBuffer(framing)
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    async for chunk in chunks:
        text = decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        for frame in buffer.feed(text):
            yield frame

    tail = decoder.decode(b"", final=True)
    if tail:
        for frame in buffer.feed(tail):
            yield frame
    for frame in buffer.flush():
        yield frame
