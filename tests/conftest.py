"""Pytest configuration shared across the suite."""

import base64
import json
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from session_auth import BroadcastChannel, MemoryStorage, SessionContext


BASE_URL = "http://backend.test/api"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def make_jwt(now: Optional[float] = None, expires_in: float = 3600, **claims: Any) -> str:
    """Mint an unsigned JWT with the required claims filled in"""
    now = time.time() if now is None else now
    payload = {
        "iss": "auth-server",
        "sub": "1",
        "aud": "web-client",
        "iat": int(now),
        "exp": int(now + expires_in),
        "jti": "jti-1",
        "sessionId": "s1",
        "role": "customer",
        "scopes": ["read:profile"],
    }
    payload.update(claims)
    header = {"alg": "HS256", "typ": "JWT"}
    return ".".join([
        _b64url(json.dumps(header).encode()),
        _b64url(json.dumps(payload).encode()),
        _b64url(b"signature"),
    ])


class FakeBackend:
    """Routes requests to per-endpoint handlers and records every call"""

    def __init__(self) -> None:
        self.routes: Dict[tuple, Callable[[httpx.Request], httpx.Response]] = {}
        self.calls: List[httpx.Request] = []

    def on(self, method: str, path: str, handler) -> None:
        """Register a handler: a callable, a Response, or a list of Responses served in order"""
        if isinstance(handler, httpx.Response):
            template = handler

            def handler(request):
                return httpx.Response(template.status_code, headers=template.headers, content=template.content)
        elif isinstance(handler, list):
            responses = list(handler)
            handler = lambda request: responses.pop(0)  # noqa: E731
        self.routes[(method, path)] = handler

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [request for request in self.calls if request.url.path == path]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"success": False, "error": "Not found"})
        return handler(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))


@pytest.fixture
def jwt_factory() -> Callable[..., str]:
    return make_jwt


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def channel() -> BroadcastChannel:
    return BroadcastChannel("test")


@pytest.fixture
def make_context(backend, channel) -> Callable[..., SessionContext]:
    """Build session contexts talking to the fake backend"""

    def factory(storage=None, **kwargs) -> SessionContext:
        return SessionContext(
            base_url=BASE_URL,
            storage=storage if storage is not None else MemoryStorage(),
            pkce_storage=kwargs.pop("pkce_storage", MemoryStorage()),
            channel=kwargs.pop("channel", channel),
            client=backend.client(),
            **kwargs,
        )

    return factory


@pytest.fixture
def user() -> Dict[str, Any]:
    return {"id": 1, "role": "customer", "scopes": ["read:profile"], "email": "jane@example.com"}
