"""Decode agent stream frames into typed events.

Decoding is split into three stages so each can be used on its own:

1. ``EventFrameParser.decode_frame`` turns one frame (JSON text or an SSE
   block) into a raw record dict.
2. ``PartAssembler`` rebuilds whole records from ``part_start`` /
   ``part_delta`` streaming records.
3. ``EventFrameParser.parse_record`` validates a record into an ``Event``.

``parse_frame`` runs stages 1 and 3 for a single frame. Bad input is never
raised: it comes back as a ``ParsingErrorEvent`` carrying the original frame.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator
from typing import Any

from pydantic import ValidationError

from rovosession.events.frames import SSE, FrameBuffer, decode_sse_frame, is_sse_frame
from rovosession.events.models import (
    EVENT_ADAPTER,
    EVENT_KIND_ALIASES,
    WIRE_EVENT_KINDS,
    CloseEvent,
    Event,
    ParsingErrorEvent,
)
from rovosession.logging import TRACE, get_logger

log = get_logger("events")

PART_START = "part_start"
PART_DELTA = "part_delta"

# Kinds whose SSE payload is the snapshot itself rather than {"data": ...}
_WRAPPED_KINDS = ("status", "usage", "prompts")

# Part kinds that are buffered until the part is complete
_BUFFERED_PART_KINDS = ("user-prompt", "tool-call", "tool-return", "retry-prompt")

# Delta field -> field it extends
_DELTA_FIELDS = {
    "content_delta": "content",
    "args_delta": "args",
    "tool_name_delta": "tool_name",
}


class FrameDecodeError(ValueError):
    """A frame could not be turned into a record."""


def normalize_kind(kind: Any) -> Any:
    """Map underscore aliases (``tool_call``) to the dashed wire kind."""
    if isinstance(kind, str):
        return EVENT_KIND_ALIASES.get(kind.strip(), kind.strip())
    return kind


def _format_validation_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


class EventFrameParser:
    """Stateless frame decoder.

    One instance can be shared by any number of sessions. Per-stream state
    (partial frames, streamed parts) lives in ``FrameBuffer`` and
    ``PartAssembler``.
    """

    def decode_frame(self, frame: str) -> dict[str, Any]:
        """Decode a frame into a raw record with a normalised ``event_kind``.

        Raises:
            FrameDecodeError: When the frame is not a JSON object or has no kind.
        """
        event_name: str | None = None
        payload_text = frame
        if is_sse_frame(frame):
            event_name, payload_text = decode_sse_frame(frame)

        if not payload_text.strip():
            if event_name in ("close", "replay_end"):
                return {"event_kind": event_name}
            raise FrameDecodeError("frame has no data")

        try:
            payload = json.loads(payload_text)
        except json.JSONDecodeError as e:
            raise FrameDecodeError(f"invalid JSON: {e.msg}") from e

        if not isinstance(payload, dict):
            raise FrameDecodeError(f"expected a JSON object, got {type(payload).__name__}")

        kind = payload.get("event_kind")
        if kind is None:
            kind = event_name
        kind = normalize_kind(kind)
        if not kind or not isinstance(kind, str):
            raise FrameDecodeError("missing event_kind")

        if event_name is not None and "event_kind" not in payload:
            payload = self._wrap_payload(kind, payload)

        return {**payload, "event_kind": kind}

    @staticmethod
    def _wrap_payload(kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        if kind not in _WRAPPED_KINDS or "data" in payload:
            return payload
        if kind == "usage" and "content" not in payload:
            return {"data": {"content": payload}}
        return {"data": payload}

    def parse_record(self, record: dict[str, Any], frame: str | None = None) -> Event:
        """Validate a decoded record into a typed event."""
        source = frame if frame is not None else json.dumps(record, default=str)
        kind = record.get("event_kind")
        if kind not in WIRE_EVENT_KINDS:
            return ParsingErrorEvent(frame=source, reason=f"unknown event kind {kind!r}")
        try:
            return EVENT_ADAPTER.validate_python(record)
        except ValidationError as e:
            return ParsingErrorEvent(frame=source, reason=_format_validation_error(e))

    def parse_frame(self, frame: str) -> Event:
        """Decode one frame into one event. Never raises for bad input.

        A lone ``part_start`` frame carries a whole part and is unwrapped;
        a ``part_delta`` needs stream context and is reported as an error.
        """
        try:
            record = self.decode_frame(frame)
        except FrameDecodeError as e:
            log.warning("Unparseable frame: %s", e)
            return ParsingErrorEvent(frame=frame, reason=str(e))

        if record["event_kind"] == PART_START:
            try:
                record = part_start_record(record)
            except FrameDecodeError as e:
                return ParsingErrorEvent(frame=frame, reason=str(e))
        elif record["event_kind"] == PART_DELTA:
            return ParsingErrorEvent(frame=frame, reason="part_delta without a stream")

        event = self.parse_record(record, frame)
        if isinstance(event, ParsingErrorEvent):
            log.warning("Invalid %s frame: %s", record["event_kind"], event.reason)
        return event

    def iter_events(self, frames: Iterable[str]) -> Iterator[Event]:
        """Lazily parse frames. Each call starts a fresh iteration."""
        for frame in frames:
            yield self.parse_frame(frame)

    async def aiter_events(self, frames: AsyncIterable[str]) -> AsyncIterator[Event]:
        """Async variant of iter_events; runs as long as the source is open."""
        async for frame in frames:
            yield self.parse_frame(frame)


def _inner(record: dict[str, Any], key: str) -> dict[str, Any]:
    # {"event_kind": "part_start", "data": {"part": {...}}} or {"part": {...}}
    container = record.get("data") if isinstance(record.get("data"), dict) else record
    inner = container.get(key)
    if not isinstance(inner, dict):
        raise FrameDecodeError(f"{record['event_kind']} record has no {key!r} object")
    return inner


def part_start_record(record: dict[str, Any]) -> dict[str, Any]:
    """Turn a ``part_start`` record into the record of the part it opens."""
    part = _inner(record, "part")
    kind = normalize_kind(part.get("part_kind"))
    if not kind:
        raise FrameDecodeError("part_start without part_kind")
    fields = {k: v for k, v in part.items() if k != "part_kind" and k not in _DELTA_FIELDS}
    if kind == "text" and "content" not in fields:
        fields["content"] = part.get("content_delta", "")
    return {**fields, "event_kind": kind}


class PartAssembler:
    """Rebuilds whole records from streamed ``part_start`` / ``part_delta`` records.

    Text parts are emitted per chunk so a UI can render them as they arrive.
    Other parts are buffered and emitted when a record that is not a delta
    arrives, or on flush(). Ordinary records pass straight through after any
    buffered part.
    """

    def __init__(self) -> None:
        self._pending: dict[str, Any] | None = None

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def push(self, record: dict[str, Any]) -> list[dict[str, Any]]:
        """Feed one decoded record, returning the records now complete.

        Returned items are records, or ``ParsingErrorEvent`` for deltas that
        do not fit the buffered part.
        """
        kind = record.get("event_kind")

        if kind == PART_DELTA:
            return self._push_delta(record)

        out = self.flush()
        if kind == PART_START:
            try:
                part = part_start_record(record)
            except FrameDecodeError as e:
                out.append(_assembly_error(record, str(e)))
                return out
            if part["event_kind"] in _BUFFERED_PART_KINDS:
                self._pending = part
            else:
                out.append(part)
            return out

        out.append(record)
        return out

    def _push_delta(self, record: dict[str, Any]) -> list[Any]:
        try:
            delta = _inner(record, "delta")
        except FrameDecodeError as e:
            return [_assembly_error(record, str(e))]
        kind = normalize_kind(delta.get("part_delta_kind"))

        if kind == "text":
            text = {k: v for k, v in delta.items() if k != "part_delta_kind" and k not in _DELTA_FIELDS}
            text["content"] = delta.get("content", delta.get("content_delta", ""))
            text["event_kind"] = "text"
            return [*self.flush(), text]

        if self._pending is None:
            return [_assembly_error(record, f"{kind} delta with no part in progress")]
        if self._pending["event_kind"] != kind:
            return [
                _assembly_error(
                    record,
                    f"{kind} delta does not continue {self._pending['event_kind']} part",
                )
            ]

        for delta_field, target in _DELTA_FIELDS.items():
            chunk = delta.get(delta_field)
            if isinstance(chunk, str):
                self._pending[target] = (self._pending.get(target) or "") + chunk
        return []

    def flush(self) -> list[dict[str, Any]]:
        """Emit the buffered part, if any."""
        if self._pending is None:
            return []
        pending, self._pending = self._pending, None
        return [pending]


def _assembly_error(record: dict[str, Any], reason: str) -> ParsingErrorEvent:
    log.warning("Part assembly error: %s", reason)
    return ParsingErrorEvent(frame=json.dumps(record, default=str), reason=reason)


class EventStream:
    """Per-stream decoder: raw chunks in, typed events out.

    Composes a ``FrameBuffer``, a ``PartAssembler`` and a shared
    ``EventFrameParser``. Create one per connection.

    Example:
        stream = EventStream()
        async for event in stream.events(response.aiter_bytes()):
            ...
    """

    def __init__(self, parser: EventFrameParser | None = None, framing: str = SSE) -> None:
        self.parser = parser or EventFrameParser()
        self.frames = FrameBuffer(framing)
        self.assembler = PartAssembler()

    def feed(self, text: str) -> list[Event]:
        """Decode stream text, returning the events it completes."""
        events: list[Event] = []
        for frame in self.frames.feed(text):
            events.extend(self._process_frame(frame))
        return events

    def close(self) -> list[Event]:
        """Flush partial frames and buffered parts at end of stream."""
        events: list[Event] = []
        for frame in self.frames.flush():
            events.extend(self._process_frame(frame))
        events.extend(self._finish(self.assembler.flush()))
        return events

    def _process_frame(self, frame: str) -> list[Event]:
        if log.isEnabledFor(TRACE):
            log.log(TRACE, "frame: %s", frame)
        try:
            record = self.parser.decode_frame(frame)
        except FrameDecodeError as e:
            log.warning("Unparseable frame: %s", e)
            # A broken frame still ends any part in progress
            return [*self._finish(self.assembler.flush()), ParsingErrorEvent(frame=frame, reason=str(e))]
        return self._finish(self.assembler.push(record), frame)

    def _finish(self, items: list[Any], frame: str | None = None) -> list[Event]:
        events: list[Event] = []
        for item in items:
            if isinstance(item, ParsingErrorEvent):
                events.append(item)
                continue
            # Only a record passed through unchanged owns the original frame text
            source = frame if frame is not None and len(items) == 1 else None
            event = self.parser.parse_record(item, source)
            if isinstance(event, ParsingErrorEvent):
                log.warning("Invalid %s record: %s", item.get("event_kind"), event.reason)
            events.append(event)
        return events

    async def events(self, chunks: AsyncIterable[bytes | str]) -> AsyncIterator[Event]:
        """Yield events from a raw chunk stream until EOF or a close event."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        async for chunk in chunks:
            text = decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
            for event in self.feed(text):
                yield event
                if isinstance(event, CloseEvent):
                    return
        tail = decoder.decode(b"", final=True)
        pending = self.feed(tail) if tail else []
        for event in [*pending, *self.close()]:
            yield event
