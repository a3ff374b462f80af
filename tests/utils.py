"""Shared test utilities for rovosession tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Iterable
from typing import Any

from rovosession.session.protocols import AgentMode, CancelResult, ChatRequest, ToolDecision


def sse_frame(record: dict[str, Any], event: str | None = None) -> str:
    """Render a record as one SSE frame, terminated by a blank line.

    Args:
        record: JSON payload for the data line
        event: Optional SSE event name line

    Returns:
        Frame text including the trailing separator
    """
    lines = []
    if event is not None:
        lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(record)}")
    return "\r\n".join(lines) + "\r\n\r\n"


def sse_stream(*records: dict[str, Any]) -> str:
    """Concatenate records into SSE stream text."""
    return "".join(sse_frame(record) for record in records)


def tool_call(call_id: str, tool_name: str = "bash", args: Any = "{}") -> dict[str, Any]:
    return {"event_kind": "tool-call", "tool_name": tool_name, "args": args, "tool_call_id": call_id}


def tool_return(call_id: str, content: str = "ok", tool_name: str = "bash") -> dict[str, Any]:
    return {
        "event_kind": "tool-return",
        "tool_name": tool_name,
        "content": content,
        "tool_call_id": call_id,
        "timestamp": "2024-01-01T00:00:00Z",
    }


def tools_start(
    *calls: dict[str, Any],
    permissions: dict[str, str] | None = None,
    permission_required: bool = True,
) -> dict[str, Any]:
    return {
        "event_kind": "on_call_tools_start",
        "tools": list(calls),
        "permission_required": permission_required,
        "permissions": permissions or {},
    }


def status(available: bool = True, model_error: str | None = None) -> dict[str, Any]:
    return {
        "event_kind": "status",
        "data": {
            "cliVersion": {"version": "0.9.0", "sessionId": "s-1"},
            "workingDirectory": "/work",
            "account": {"email": "dev@example.com", "isServerAvailable": available},
            "memory": {"memoryPaths": [], "hasMemoryFiles": False},
            "model": {"modelName": "claude", "errorMessage": model_error},
        },
    }


async def chunked(data: str | bytes, size: int = 7) -> AsyncIterator[bytes]:
    """Yield data in small byte chunks, splitting frames at awkward places."""
    raw = data.encode("utf-8") if isinstance(data, str) else data
    for start in range(0, len(raw), size):
        yield raw[start : start + size]
        await asyncio.sleep(0)


class FakeBackend:
    """In-memory AgentBackend.

    Chat and replay streams are served from queued stream texts. A stream
    stays open until release() is called when ``hold_streams`` is set, so
    tests can act while a prompt is still running.
    """

    def __init__(self, chat_streams: Iterable[str] = (), replay_stream: str = "") -> None:
        self.chat_streams = list(chat_streams)
        self.replay_stream = replay_stream
        self.requests: list[ChatRequest] = []
        self.decisions: list[list[ToolDecision]] = []
        self.cancel_calls = 0
        self.cancel_result = CancelResult(cancelled=True, message="Chat cancelled")
        self.mode = AgentMode.DEFAULT
        self.session_ids = ["session-2", "session-3"]
        self.hold_streams = False
        self._release = asyncio.Event()

    def release(self) -> None:
        self._release.set()

    async def _serve(self, text: str) -> AsyncIterator[bytes]:
        async for chunk in chunked(text):
            yield chunk
        if self.hold_streams:
            await self._release.wait()

    def chat(self, request: ChatRequest) -> AsyncIterator[bytes]:
        self.requests.append(request)
        text = self.chat_streams.pop(0) if self.chat_streams else ""
        return self._serve(text)

    def replay(self) -> AsyncIterator[bytes]:
        return self._serve(self.replay_stream)

    async def cancel(self) -> CancelResult:
        self.cancel_calls += 1
        await asyncio.sleep(0)
        return self.cancel_result

    async def resume_tool_calls(self, decisions: list[ToolDecision]) -> None:
        self.decisions.append(list(decisions))

    async def create_session(self) -> str | None:
        return self.session_ids.pop(0) if self.session_ids else None

    async def get_agent_mode(self) -> AgentMode:
        return self.mode

    async def set_agent_mode(self, mode: AgentMode) -> AgentMode:
        self.mode = AgentMode(mode)
        return self.mode
