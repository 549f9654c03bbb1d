"""Session source backed by an OpenCode-style HTTP server.

Endpoints used::

    POST /session                 create a session, returns {"id": ...}
    POST /session/{id}/message    send a prompt (text parts)
    POST /session/{id}/abort      abort the running turn
    GET  /event                   server-sent events, one JSON object per ``data:`` line
    GET  /global/health           liveness probe

Every call takes an optional ``directory`` query parameter so one server can
serve several working copies.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import httpx
from loguru import logger

from ..constants import DEFAULT_OPENCODE_URL, DEFAULT_REQUEST_TIMEOUT_SECONDS
from ..errors import ExternalCallFailure
from ..logging_utils import summarize_session_event
from ..models import SessionEvent
from .base import SessionEventSource, SessionSubscription


def _params(directory: Optional[Path | str]) -> dict[str, str]:
    return {"directory": str(directory)} if directory else {}


def _describe_http_error(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        body = exc.response.text.strip()
        detail = f": {body[:200]}" if body else ""
        return f"HTTP {exc.response.status_code}{detail}"
    return str(exc) or type(exc).__name__


class _SseSubscription(SessionSubscription):
    """Reads ``data:`` frames off an open streaming response."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__()
        self._response = response
        self._lines = response.aiter_lines()

    async def _next_event(self) -> SessionEvent:
        while True:
            try:
                line = await self._lines.__anext__()
            except httpx.HTTPError as exc:
                logger.warning("Session event stream dropped: {}", _describe_http_error(exc))
                raise StopAsyncIteration from exc
            if not line.startswith("data:"):
                continue
            raw = line[len("data:"):].strip()
            if not raw:
                continue
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed event frame: {}", raw[:120])
                continue
            if not isinstance(data, dict):
                continue
            event = SessionEvent.from_wire(data)
            logger.trace("Session event {}", summarize_session_event(event))
            return event

    async def _release(self) -> None:
        await self._response.aclose()


class OpenCodeSessionSource(SessionEventSource):
    def __init__(
        self,
        base_url: str = DEFAULT_OPENCODE_URL,
        *,
        directory: Optional[Path | str] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.directory = str(directory) if directory else None
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=request_timeout)

    def _dir(self, directory: Optional[Path | str]) -> Optional[Path | str]:
        return directory or self.directory

    async def _post(self, operation: str, url: str, *, json_body: Any, directory: Optional[Path | str]) -> httpx.Response:
        try:
            response = await self._client.post(url, json=json_body, params=_params(self._dir(directory)))
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalCallFailure(operation, _describe_http_error(exc)) from exc
        return response

    async def subscribe(self, directory: Optional[Path | str] = None) -> SessionSubscription:
        # No read timeout on the stream: sessions can stay quiet for minutes.
        request = self._client.build_request(
            "GET",
            "/event",
            params=_params(self._dir(directory)),
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(None, connect=DEFAULT_REQUEST_TIMEOUT_SECONDS),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise ExternalCallFailure("subscribe", _describe_http_error(exc)) from exc
        if response.is_error:
            await response.aread()
            await response.aclose()
            raise ExternalCallFailure("subscribe", f"HTTP {response.status_code}: {response.text[:200]}")
        return _SseSubscription(response)

    async def create_session(self, title: str, directory: Optional[Path | str] = None) -> str:
        response = await self._post("create_session", "/session", json_body={"title": title}, directory=directory)
        try:
            data = response.json()
        except ValueError as exc:
            raise ExternalCallFailure("create_session", "response is not JSON") from exc
        session_id = data.get("id") if isinstance(data, dict) else None
        if not session_id:
            raise ExternalCallFailure("create_session", "response carries no session id")
        logger.info("Created session {} ({})", session_id, title)
        return str(session_id)

    async def send_input(
        self,
        session_id: str,
        text: str,
        directory: Optional[Path | str] = None,
    ) -> None:
        await self._post(
            "send_input",
            f"/session/{session_id}/message",
            json_body={"parts": [{"type": "text", "text": text}]},
            directory=directory,
        )

    async def abort(self, session_id: str) -> None:
        await self._post("abort", f"/session/{session_id}/abort", json_body=None, directory=None)
        logger.info("Aborted session {}", session_id)

    async def health(self) -> bool:
        try:
            response = await self._client.get("/global/health")
        except httpx.HTTPError as exc:
            logger.debug("Health check failed: {}", _describe_http_error(exc))
            return False
        return response.is_success

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
