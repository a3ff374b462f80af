"""Tests for the RovoDev serve HTTP client."""

from __future__ import annotations

import json

import httpx
import pytest

from rovosession.client import RovoDevApiClient, RovoDevApiError
from rovosession.config import AgentConfig
from rovosession.session import AgentBackend, AgentMode, ChatRequest, ContextEntry, ToolDecision

STREAM_BODY = b'data: {"event_kind": "text", "content": "Hi"}\n\ndata: {"event_kind": "close"}\n\n'


class Recorder:
    """httpx MockTransport handler that records requests and serves canned responses."""

    def __init__(self, routes: dict[tuple[str, str], httpx.Response] | None = None) -> None:
        self.routes = routes or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.routes.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(404)
        return response

    def body(self, index: int = -1):
        return json.loads(self.requests[index].content)


def make_client(recorder, token: str | None = "secret-token", **kwargs) -> RovoDevApiClient:
    return RovoDevApiClient(
        "127.0.0.1",
        8123,
        token,
        transport=httpx.MockTransport(recorder),
        **kwargs,
    )


class TestClientSetup:
    def test_is_agent_backend(self) -> None:
        assert isinstance(make_client(Recorder()), AgentBackend)

    def test_base_url(self) -> None:
        assert make_client(Recorder()).base_api_url == "http://127.0.0.1:8123"

    @pytest.mark.asyncio
    async def test_headers(self) -> None:
        recorder = Recorder({("POST", "/shutdown"): httpx.Response(200)})
        async with make_client(recorder) as client:
            await client.shutdown()

        headers = recorder.requests[0].headers
        assert headers["authorization"] == "Bearer secret-token"
        assert headers["accept"] == "text/event-stream"
        assert headers["content-type"] == "application/json"

    @pytest.mark.asyncio
    async def test_no_token_no_authorization(self) -> None:
        recorder = Recorder({("POST", "/shutdown"): httpx.Response(200)})
        async with make_client(recorder, token=None) as client:
            await client.shutdown()
        assert "authorization" not in recorder.requests[0].headers

    @pytest.mark.asyncio
    async def test_from_config_reads_token(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ROVODEV_SESSION_TOKEN", "from-env")
        recorder = Recorder({("POST", "/shutdown"): httpx.Response(200)})
        config = AgentConfig(port=9000, pause_on_call_tools_start=False)
        async with RovoDevApiClient.from_config(config, transport=httpx.MockTransport(recorder)) as client:
            assert client.base_api_url == "http://127.0.0.1:9000"
            assert client.pause_on_call_tools_start is False
            await client.shutdown()
        assert recorder.requests[0].headers["authorization"] == "Bearer from-env"


class TestChat:
    """Tests for the chat and replay streams."""

    @pytest.mark.asyncio
    async def test_chat_posts_then_streams(self) -> None:
        recorder = Recorder(
            {
                ("POST", "/v3/set_chat_message"): httpx.Response(200, json={}),
                ("GET", "/v3/stream_chat"): httpx.Response(200, content=STREAM_BODY),
            }
        )
        request = ChatRequest(
            message="Fix it",
            context=(ContextEntry(file_path="src/app.py", selection=(3, 9)),),
            enable_deep_plan=True,
        )
        async with make_client(recorder) as client:
            data = b"".join([chunk async for chunk in client.chat(request)])

        assert data == STREAM_BODY
        assert recorder.body(0) == {
            "message": "Fix it",
            "enable_deep_plan": True,
            "context": [{"type": "file", "file_path": "src/app.py", "selection": {"start": 3, "end": 9}}],
        }
        assert recorder.requests[1].url.params["pause_on_call_tools_start"] == "true"

    @pytest.mark.asyncio
    async def test_pause_flag_off(self) -> None:
        recorder = Recorder(
            {
                ("POST", "/v3/set_chat_message"): httpx.Response(200, json={}),
                ("GET", "/v3/stream_chat"): httpx.Response(200, content=b""),
            }
        )
        async with make_client(recorder, pause_on_call_tools_start=False) as client:
            _ = [chunk async for chunk in client.chat(ChatRequest("hi"))]
        assert recorder.requests[1].url.params["pause_on_call_tools_start"] == "false"

    @pytest.mark.asyncio
    async def test_stream_http_error(self) -> None:
        recorder = Recorder(
            {
                ("POST", "/v3/set_chat_message"): httpx.Response(200, json={}),
                ("GET", "/v3/stream_chat"): httpx.Response(401, text="unauthorized"),
            }
        )
        async with make_client(recorder) as client:
            with pytest.raises(RovoDevApiError) as exc_info:
                _ = [chunk async for chunk in client.chat(ChatRequest("hi"))]

        assert str(exc_info.value) == "Failed to fetch '/v3/stream_chat API: HTTP 401"
        assert exc_info.value.http_status == 401

    @pytest.mark.asyncio
    async def test_replay(self) -> None:
        recorder = Recorder({("POST", "/v3/replay"): httpx.Response(200, content=STREAM_BODY)})
        async with make_client(recorder) as client:
            data = b"".join([chunk async for chunk in client.replay()])
        assert data == STREAM_BODY


class TestCommands:
    """Tests for the non-streaming endpoints."""

    @pytest.mark.asyncio
    async def test_cancel(self) -> None:
        recorder = Recorder(
            {("POST", "/v3/cancel"): httpx.Response(200, json={"message": "No chat in progress", "cancelled": False})}
        )
        async with make_client(recorder) as client:
            result = await client.cancel()
        assert result.cancelled is False
        assert result.message == "No chat in progress"

    @pytest.mark.asyncio
    async def test_resume_tool_calls(self) -> None:
        recorder = Recorder({("POST", "/v3/resume_tool_calls"): httpx.Response(200, json={})})
        async with make_client(recorder) as client:
            await client.resume_tool_calls([ToolDecision("c1"), ToolDecision("c2", "No thanks")])
        assert recorder.body() == {
            "decisions": [
                {"tool_call_id": "c1"},
                {"tool_call_id": "c2", "deny_message": "No thanks"},
            ]
        }

    @pytest.mark.asyncio
    async def test_create_session(self) -> None:
        recorder = Recorder(
            {("POST", "/v3/sessions/create"): httpx.Response(200, json={}, headers={"x-session-id": "abc"})}
        )
        async with make_client(recorder) as client:
            assert await client.create_session() == "abc"

    @pytest.mark.asyncio
    async def test_agent_mode(self) -> None:
        recorder = Recorder(
            {
                ("GET", "/v3/agent-mode"): httpx.Response(200, json={"mode": "ask"}),
                ("PUT", "/v3/agent-mode"): httpx.Response(200, json={"mode": "plan", "message": "ok"}),
                ("GET", "/v3/available-modes"): httpx.Response(
                    200, json={"modes": [{"mode": "plan", "description": "Plan first"}]}
                ),
            }
        )
        async with make_client(recorder) as client:
            assert await client.get_agent_mode() == AgentMode.ASK
            assert await client.set_agent_mode(AgentMode.PLAN) == AgentMode.PLAN
            assert await client.available_modes() == [{"mode": "plan", "description": "Plan first"}]
        assert recorder.body(1) == {"mode": "plan"}

    @pytest.mark.asyncio
    async def test_status_and_healthcheck(self) -> None:
        recorder = Recorder(
            {
                ("GET", "/v3/status"): httpx.Response(
                    200, json={"workingDirectory": "/w", "account": {"isServerAvailable": True}}
                ),
                ("GET", "/healthcheck"): httpx.Response(
                    200, json={"status": "healthy", "version": "1.0"}, headers={"x-session-id": "s-9"}
                ),
            }
        )
        async with make_client(recorder) as client:
            snapshot = await client.status()
            health = await client.healthcheck()
        assert snapshot.working_directory == "/w"
        assert snapshot.is_available
        assert health == {"status": "healthy", "version": "1.0", "sessionId": "s-9"}

    @pytest.mark.asyncio
    async def test_accept_mcp_terms(self) -> None:
        recorder = Recorder({("POST", "/accept-mcp-terms"): httpx.Response(200, json={})})
        async with make_client(recorder) as client:
            await client.accept_mcp_terms("jira", "deny")
            await client.accept_mcp_terms(accept_all=True)
        assert recorder.body(0) == {"servers": [{"server_name": "jira", "decision": "deny"}], "accept_all": "false"}
        assert recorder.body(1) == {"servers": [], "accept_all": "true"}


class TestErrors:
    @pytest.mark.asyncio
    async def test_http_error_message(self) -> None:
        recorder = Recorder({("POST", "/v3/set_chat_message"): httpx.Response(500)})
        async with make_client(recorder) as client:
            with pytest.raises(RovoDevApiError) as exc_info:
                _ = [chunk async for chunk in client.chat(ChatRequest("hi"))]
        assert str(exc_info.value) == "Failed to fetch '/v3/set_chat_message API: HTTP 500"
        assert exc_info.value.path == "/v3/set_chat_message"

    @pytest.mark.asyncio
    async def test_network_error(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        async with make_client(refuse) as client:
            with pytest.raises(RovoDevApiError) as exc_info:
                await client.cancel()
        assert str(exc_info.value) == "Failed to fetch '/v3/cancel API: Connection refused"
        assert exc_info.value.http_status is None
