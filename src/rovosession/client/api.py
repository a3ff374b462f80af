"""HTTP client for the RovoDev serve API.

Implements the AgentBackend protocol on top of httpx. Streaming endpoints
yield raw bytes; decoding is the session's job.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from rovosession.config.schema import AgentConfig
from rovosession.config.secrets import fetch_session_token
from rovosession.events.models import StatusSnapshot
from rovosession.logging import get_logger
from rovosession.session.protocols import AgentMode, CancelResult, ChatRequest, ToolDecision

log = get_logger("client")


@dataclass
class RovoDevApiError(Exception):
    """Raised for non-2xx responses and transport failures."""

    message: str
    http_status: int | None = None
    path: str = ""

    def __str__(self) -> str:
        return self.message


class RovoDevApiClient:
    """Async client for one RovoDev serve process.

    Example:
        async with RovoDevApiClient("127.0.0.1", 8080, token) as client:
            async for chunk in client.chat(ChatRequest("hello")):
                ...
    """

    def __init__(
        self,
        host: str,
        port: int,
        session_token: str | None = None,
        *,
        timeout: float = 30.0,
        pause_on_call_tools_start: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_api_url = f"http://{host}:{port}"
        self.pause_on_call_tools_start = pause_on_call_tools_start

        headers = {
            "accept": "text/event-stream",
            "Content-Type": "application/json",
        }
        if session_token:
            headers["Authorization"] = f"Bearer {session_token}"

        self._client = httpx.AsyncClient(
            base_url=self._base_api_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        config: AgentConfig,
        session_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> RovoDevApiClient:
        """Build a client from AgentConfig, reading the token from secrets if not given."""
        return cls(
            config.host,
            config.port,
            session_token if session_token is not None else fetch_session_token(),
            timeout=config.timeout,
            pause_on_call_tools_start=config.pause_on_call_tools_start,
            transport=transport,
        )

    @property
    def base_api_url(self) -> str:
        return self._base_api_url

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> RovoDevApiClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # -------------------------------------------------------------------------
    # Transport helpers
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        log.debug("%s %s", method, path)
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            raise _network_error(path, e) from e
        if not response.is_success:
            raise RovoDevApiError(
                f"Failed to fetch '{path} API: HTTP {response.status_code}",
                http_status=response.status_code,
                path=path,
            )
        return response

    async def _stream(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict[str, str] | None = None,
    ) -> AsyncIterator[bytes]:
        log.debug("%s %s (stream)", method, path)
        # Streams stay open for the whole prompt; only connecting is bounded
        timeout = httpx.Timeout(self._client.timeout.connect, read=None)
        try:
            async with self._client.stream(
                method, path, json=json, params=params, timeout=timeout
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise RovoDevApiError(
                        f"Failed to fetch '{path} API: HTTP {response.status_code}",
                        http_status=response.status_code,
                        path=path,
                    )
                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as e:
            raise _network_error(path, e) from e

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------

    async def chat(self, request: ChatRequest) -> AsyncIterator[bytes]:
        """POST /v3/set_chat_message, then stream GET /v3/stream_chat."""
        await self._request("POST", "/v3/set_chat_message", json=request.to_dict())
        params = {"pause_on_call_tools_start": "true" if self.pause_on_call_tools_start else "false"}
        async for chunk in self._stream("GET", "/v3/stream_chat", params=params):
            yield chunk

    async def replay(self) -> AsyncIterator[bytes]:
        async for chunk in self._stream("POST", "/v3/replay"):
            yield chunk

    async def cancel(self) -> CancelResult:
        response = await self._request("POST", "/v3/cancel")
        data = response.json()
        return CancelResult(cancelled=bool(data.get("cancelled")), message=data.get("message", ""))

    async def resume_tool_calls(self, decisions: list[ToolDecision]) -> None:
        body = {"decisions": [decision.to_dict() for decision in decisions]}
        await self._request("POST", "/v3/resume_tool_calls", json=body)

    # -------------------------------------------------------------------------
    # Sessions and modes
    # -------------------------------------------------------------------------

    async def create_session(self) -> str | None:
        """POST /v3/sessions/create. The new id comes back in ``x-session-id``."""
        response = await self._request("POST", "/v3/sessions/create")
        return response.headers.get("x-session-id")

    async def get_agent_mode(self) -> AgentMode:
        response = await self._request("GET", "/v3/agent-mode")
        return AgentMode(response.json()["mode"])

    async def set_agent_mode(self, mode: AgentMode) -> AgentMode:
        response = await self._request("PUT", "/v3/agent-mode", json={"mode": AgentMode(mode).value})
        return AgentMode(response.json().get("mode", mode))

    async def available_modes(self) -> list[dict[str, str]]:
        """Modes the agent offers. Kept as plain dicts; new modes may appear."""
        response = await self._request("GET", "/v3/available-modes")
        return list(response.json().get("modes") or [])

    # -------------------------------------------------------------------------
    # Process
    # -------------------------------------------------------------------------

    async def status(self) -> StatusSnapshot:
        response = await self._request("GET", "/v3/status")
        return StatusSnapshot.model_validate(response.json())

    async def healthcheck(self) -> dict[str, Any]:
        response = await self._request("GET", "/healthcheck")
        data = response.json()
        data["sessionId"] = response.headers.get("x-session-id")
        return data

    async def shutdown(self) -> None:
        await self._request("POST", "/shutdown")

    async def accept_mcp_terms(
        self,
        server_name: str | None = None,
        decision: str | None = None,
        *,
        accept_all: bool = False,
    ) -> None:
        """Answer the MCP server terms prompt for one server, or accept them all."""
        servers = []
        if server_name is not None and not accept_all:
            servers.append({"server_name": server_name, "decision": decision or "accept"})
        body = {"servers": servers, "accept_all": "true" if accept_all else "false"}
        await self._request("POST", "/accept-mcp-terms", json=body)


def _network_error(path: str, error: httpx.HTTPError) -> RovoDevApiError:
    detail = str(error) or type(error).__name__
    log.warning("Request to %s failed: %s", path, detail)
    return RovoDevApiError(f"Failed to fetch '{path} API: {detail}", path=path)
