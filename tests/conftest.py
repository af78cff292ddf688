"""Shared test fixtures for the dz_openapi test suite.

WHY: Almost every test needs a fake gateway, fixed credentials, a
controllable clock, and a sleep that returns immediately. Centralizing
them keeps the test modules focused on behavior.

HOW: FakeGateway routes POSTs by URL path to queued JSON responses (the
last queued response repeats) or to a callable, and records every request.
It plugs into httpx through httpx.MockTransport, so the real executor code
path runs end to end.

RULES:
- No test touches the network
- Token endpoint responses default to a 15-day token
- Sleeps are recorded, never actually waited on
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Union

import httpx
import pytest

from dz_openapi.api.models import Credentials

API_HOST = "https://gw.example.com"
TOKEN_PATH = "/edf/oauth2/access_token"
FIFTEEN_DAYS_MS = 15 * 24 * 60 * 60 * 1000

Responder = Union[Any, Callable[[httpx.Request], Any]]


def token_response(
    access_token: str = "tok-1",
    expires_in: int = FIFTEEN_DAYS_MS,
    refresh_token: str = "refresh-1",
) -> Dict[str, Any]:
    """A successful token endpoint response in the new-token shape."""
    return {
        "body": {
            "access_token": access_token,
            "expires_in": expires_in,
            "refresh_token": refresh_token,
        }
    }


def ok(value: Any) -> Dict[str, Any]:
    """A successful standard envelope."""
    return {"result": {"success": True}, "value": value}


def fail(message: str) -> Dict[str, Any]:
    """An unsuccessful standard envelope."""
    return {"result": {"success": False}, "error": {"message": message}}


class FakeGateway:
    """In-process stand-in for the gateway, routed by URL path."""

    def __init__(self) -> None:
        self._routes: Dict[str, List[Responder]] = {}
        self.requests: List[httpx.Request] = []
        self.on(TOKEN_PATH, token_response())

    def on(self, path: str, *responses: Responder) -> FakeGateway:
        self._routes[path] = list(responses)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, text="no route")
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        result = responder(request) if callable(responder) else responder
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=result)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def bodies(self, path: str) -> List[Dict[str, Any]]:
        return [json.loads(r.content.decode("utf-8")) for r in self.calls_to(path)]


class FakeClock:
    """Callable epoch-milliseconds clock that tests move by hand."""

    def __init__(self, now_ms: int = 1_600_000_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class SleepRecorder:
    """Sleep coroutine that records delays and returns immediately."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(api_host=API_HOST + "/", app_key="app-key", app_secret="app-secret")


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()
