"""Fixtures for adapter tests: a fake SSE endpoint built on httpx.MockTransport."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest


def encode_sse(frames: list[Any], *, done: bool = True) -> bytes:
    """Encode frames as an SSE body.

    Dict frames carrying a ``type`` key also get an ``event:`` line, the way
    Anthropic frames its stream. String frames are sent verbatim as data.
    """
    lines: list[str] = []
    for frame in frames:
        if isinstance(frame, str):
            lines.append(f"data: {frame}")
        else:
            if isinstance(frame, dict) and "type" in frame:
                lines.append(f"event: {frame['type']}")
            lines.append(f"data: {json.dumps(frame)}")
        lines.append("")
    if done:
        lines.extend(["data: [DONE]", ""])
    return ("\n".join(lines) + "\n").encode()


class FakeSSEServer:
    """Records every request and answers with a canned SSE body."""

    def __init__(
        self,
        body: bytes = b"",
        *,
        status: int = 200,
        responder: Callable[[httpx.Request], httpx.Response] | None = None,
    ) -> None:
        self.body = body
        self.status = status
        self.responder = responder
        self.requests: list[httpx.Request] = []

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responder is not None:
            return self.responder(request)
        return httpx.Response(
            self.status,
            content=self.body,
            headers={"content-type": "text/event-stream"},
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    @property
    def last_request(self) -> httpx.Request:
        return self.requests[-1]

    @property
    def last_payload(self) -> dict[str, Any]:
        return json.loads(self.last_request.content)


@pytest.fixture
def sse_server() -> Callable[..., FakeSSEServer]:
    """Factory: ``sse_server(frames, done=True, status=200, responder=None)``."""

    def _make(
        frames: list[Any] | None = None,
        *,
        done: bool = True,
        status: int = 200,
        body: bytes | None = None,
        responder: Callable[[httpx.Request], httpx.Response] | None = None,
    ) -> FakeSSEServer:
        if body is None:
            body = encode_sse(frames or [], done=done)
        return FakeSSEServer(body, status=status, responder=responder)

    return _make


async def collect(stream) -> list[Any]:
    return [chunk async for chunk in stream]


@pytest.fixture
def drain() -> Callable:
    """Async helper that drains an adapter stream into a list."""
    return collect
