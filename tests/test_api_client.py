import asyncio
import json

import httpx
import pytest

from session_auth.errors import (
    AuthenticationFailed,
    HttpError,
    NetworkError,
    ResponseDecodeError,
)
from session_auth.api_client import is_auth_endpoint
from session_auth.models import BatchRequest


def bearer(request: httpx.Request) -> str:
    return request.headers.get("Authorization", "")


def refresh_handler(jwt_factory, user, counter):
    def handle(request):
        counter.append(request)
        return httpx.Response(200, json={
            "success": True,
            "access_token": jwt_factory(jti=f"refreshed-{len(counter)}"),
            "refresh_token": f"R{len(counter) + 1}",
            "user": user,
        })
    return handle


@pytest.mark.asyncio
async def test_request_injects_bearer_token(backend, make_context, jwt_factory, user):
    backend.on("GET", "/api/products", httpx.Response(200, json={"items": [1, 2]}))
    context = make_context()
    access = jwt_factory()
    context.store.set_tokens(access, "R1", None, user)

    data = await context.api.request("/products")

    assert data == {"items": [1, 2]}
    assert bearer(backend.calls[0]) == f"Bearer {access}"
    await context.aclose()


@pytest.mark.asyncio
async def test_request_without_session_sends_no_bearer(backend, make_context):
    backend.on("GET", "/api/public", httpx.Response(200, json={"ok": True}))
    context = make_context()

    assert await context.api.request("/public") == {"ok": True}
    assert "Authorization" not in backend.calls[0].headers
    await context.aclose()


@pytest.mark.asyncio
async def test_401_refreshes_and_retries_once(backend, make_context, jwt_factory, user):
    refreshes = []
    backend.on("POST", "/api/auth/refresh", refresh_handler(jwt_factory, user, refreshes))
    backend.on("GET", "/api/orders", [
        httpx.Response(401, json={"error": "Token expired"}),
        httpx.Response(200, json={"orders": []}),
    ])
    context = make_context()
    old_access = jwt_factory(jti="old")
    context.store.set_tokens(old_access, "R1", None, user)

    data = await context.api.request("/orders")

    orders = backend.calls_to("/api/orders")
    assert data == {"orders": []}
    assert len(refreshes) == 1
    assert len(orders) == 2
    assert bearer(orders[0]) == f"Bearer {old_access}"
    assert bearer(orders[1]) == f"Bearer {context.store.access_token}"
    assert context.store.access_token != old_access
    await context.aclose()


@pytest.mark.asyncio
async def test_second_401_clears_session_without_third_attempt(backend, make_context, jwt_factory, user):
    refreshes = []
    backend.on("POST", "/api/auth/refresh", refresh_handler(jwt_factory, user, refreshes))
    backend.on("GET", "/api/orders", httpx.Response(401, json={"error": "Unauthorized"}))
    context = make_context()
    events = []
    context.store.subscribe(events.append)
    context.store.set_tokens(jwt_factory(), "R1", None, user)

    with pytest.raises(AuthenticationFailed):
        await context.api.request("/orders")

    assert len(backend.calls_to("/api/orders")) == 2
    assert len(refreshes) == 1
    assert context.store.tokens is None
    assert events[-1].reason == "authentication_failed"
    await context.aclose()


@pytest.mark.asyncio
async def test_401_without_refresh_token(backend, make_context, jwt_factory, user):
    backend.on("GET", "/api/orders", httpx.Response(401, json={"error": "Unauthorized"}))
    context = make_context()
    context.store.set_tokens(jwt_factory(), None, None, user)

    with pytest.raises(AuthenticationFailed, match="Unauthorized"):
        await context.api.request("/orders")

    assert backend.calls_to("/api/auth/refresh") == []
    assert context.store.tokens is None
    await context.aclose()


@pytest.mark.asyncio
async def test_401_on_auth_endpoint_is_not_retried(backend, make_context, jwt_factory, user):
    backend.on("GET", "/api/auth/profile", httpx.Response(401, json={"error": "Invalid token"}))
    context = make_context()
    context.store.set_tokens(jwt_factory(), "R1", None, user)

    with pytest.raises(AuthenticationFailed):
        await context.api.get_profile()

    assert len(backend.calls_to("/api/auth/profile")) == 1
    assert backend.calls_to("/api/auth/refresh") == []
    assert context.store.tokens is None
    await context.aclose()


@pytest.mark.asyncio
async def test_failed_refresh_surfaces_authentication_failed(backend, make_context, jwt_factory, user):
    backend.on("POST", "/api/auth/refresh", httpx.Response(401, json={"error": "Refresh token revoked"}))
    backend.on("GET", "/api/orders", httpx.Response(401, json={"error": "Token expired"}))
    context = make_context()
    context.store.set_tokens(jwt_factory(), "R1", None, user)

    with pytest.raises(AuthenticationFailed):
        await context.api.request("/orders")

    assert len(backend.calls_to("/api/orders")) == 1
    assert context.store.tokens is None
    await context.aclose()


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_before_request(backend, make_context, jwt_factory, user):
    refreshes = []
    backend.on("POST", "/api/auth/refresh", refresh_handler(jwt_factory, user, refreshes))
    backend.on("GET", "/api/orders", httpx.Response(200, json={"orders": []}))
    context = make_context()
    context.store.set_tokens(jwt_factory(expires_in=-10), "R1", None, user)

    await context.api.request("/orders")

    assert len(refreshes) == 1
    assert bearer(backend.calls_to("/api/orders")[0]) == f"Bearer {context.store.access_token}"
    await context.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("status, body, message", [
    (403, {}, "Access forbidden"),
    (404, {}, "Resource not found"),
    (429, {}, "Rate limit exceeded"),
    (500, {}, "Internal server error"),
    (418, {}, "Request failed with status 418"),
    (403, {"error": "Admins only"}, "Admins only"),
    (400, {"message": "Bad input"}, "Bad input"),
])
async def test_http_errors_are_classified(backend, make_context, jwt_factory, user, status, body, message):
    backend.on("GET", "/api/thing", httpx.Response(status, json=body))
    context = make_context()
    context.store.set_tokens(jwt_factory(), "R1", None, user)

    with pytest.raises(HttpError) as exc_info:
        await context.api.request("/thing")

    assert exc_info.value.status == status
    assert exc_info.value.message == message
    assert str(exc_info.value) == f"HTTP {status}: {message}"
    assert context.store.is_authenticated()
    await context.aclose()


@pytest.mark.asyncio
async def test_network_errors_are_classified(backend, make_context):
    def refused(request):
        raise httpx.ConnectError("connection refused", request=request)

    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    backend.on("GET", "/api/refused", refused)
    backend.on("GET", "/api/slow", slow)
    context = make_context()

    with pytest.raises(NetworkError) as refused_info:
        await context.api.request("/refused")
    with pytest.raises(NetworkError) as slow_info:
        await context.api.request("/slow")

    assert not refused_info.value.is_timeout
    assert slow_info.value.is_timeout
    await context.aclose()


@pytest.mark.asyncio
async def test_invalid_json_body(backend, make_context):
    backend.on("GET", "/api/broken", httpx.Response(200, content=b"<html>"))
    context = make_context()

    with pytest.raises(ResponseDecodeError):
        await context.api.request("/broken")
    await context.aclose()


@pytest.mark.asyncio
async def test_batch_captures_each_outcome(backend, make_context, jwt_factory, user):
    backend.on("GET", "/api/a", httpx.Response(200, json={"a": 1}))
    backend.on("POST", "/api/c", httpx.Response(201, json={"c": 3}))
    context = make_context()
    context.store.set_tokens(jwt_factory(), "R1", None, user)

    results = await context.api.batch([
        BatchRequest("/a"),
        {"endpoint": "/missing"},
        BatchRequest("/c", "POST", json={"x": 1}),
    ])

    assert [result.success for result in results] == [True, False, True]
    assert results[0].data == {"a": 1}
    assert isinstance(results[1].error, HttpError)
    assert results[1].error_message == "HTTP 404: Not found"
    assert results[2].data == {"c": 3}
    await context.aclose()


@pytest.mark.asyncio
async def test_login_stores_session(backend, make_context, jwt_factory, user):
    access = jwt_factory()
    backend.on("POST", "/api/auth/login", httpx.Response(200, json={
        "success": True,
        "access_token": access,
        "refresh_token": "R1",
        "session": {"id": "s1", "createdAt": "2024-01-01T00:00:00Z"},
        "user": user,
    }))
    context = make_context()

    result = await context.api.login("jane@example.com", "secret")

    body = json.loads(backend.calls[0].content)
    assert body == {"email": "jane@example.com", "password": "secret", "clientId": "web-client"}
    assert result.user.email == "jane@example.com"
    assert context.store.is_authenticated()
    assert context.store.access_token == access
    assert context.store.session.session_id == "s1"
    assert context.store.session.issued_at == "2024-01-01T00:00:00Z"
    await context.aclose()


@pytest.mark.asyncio
async def test_login_rejected(backend, make_context):
    backend.on("POST", "/api/auth/login", httpx.Response(401, json={"error": "Invalid credentials"}))
    context = make_context()

    with pytest.raises(AuthenticationFailed, match="Invalid credentials"):
        await context.api.login("jane@example.com", "wrong")

    assert backend.calls_to("/api/auth/refresh") == []
    await context.aclose()


@pytest.mark.asyncio
async def test_login_with_success_false(backend, make_context):
    backend.on("POST", "/api/auth/login", httpx.Response(200, json={"success": False, "error": "Account locked"}))
    context = make_context()

    with pytest.raises(HttpError, match="Account locked"):
        await context.api.login("jane@example.com", "secret")
    assert context.store.tokens is None
    await context.aclose()


@pytest.mark.asyncio
async def test_login_with_malformed_response(backend, make_context):
    backend.on("POST", "/api/auth/login", httpx.Response(200, json={"success": True}))
    context = make_context()

    with pytest.raises(ResponseDecodeError):
        await context.api.login("jane@example.com", "secret")
    await context.aclose()


@pytest.mark.asyncio
async def test_logout_revokes_and_clears(backend, make_context, jwt_factory, user):
    backend.on("POST", "/api/auth/logout", httpx.Response(200, json={"success": True}))
    context = make_context()
    access = jwt_factory()
    context.store.set_tokens(access, "R1", None, user)

    assert await context.api.logout() is True

    assert json.loads(backend.calls[0].content) == {"access_token": access, "refresh_token": "R1"}
    assert context.store.tokens is None
    await context.aclose()


@pytest.mark.asyncio
async def test_logout_clears_even_when_server_fails(backend, make_context, jwt_factory, user):
    backend.on("POST", "/api/auth/logout", httpx.Response(500, json={}))
    context = make_context()
    events = []
    context.store.subscribe(events.append)
    context.store.set_tokens(jwt_factory(), "R1", None, user)

    assert await context.api.logout() is False

    assert context.store.tokens is None
    assert events[-1].reason == "logout"
    await context.aclose()


@pytest.mark.asyncio
async def test_logout_all(backend, make_context, jwt_factory, user):
    backend.on("POST", "/api/auth/logout-all", httpx.Response(200, json={"success": True}))
    context = make_context()
    access = jwt_factory()
    context.store.set_tokens(access, "R1", None, user)

    assert await context.api.logout_all() is True

    assert json.loads(backend.calls[0].content) == {"access_token": access}
    assert context.store.tokens is None
    await context.aclose()


@pytest.mark.asyncio
async def test_introspect_token(backend, make_context, jwt_factory, user):
    backend.on("POST", "/api/tokens/introspect", httpx.Response(200, json={"active": True}))
    context = make_context()
    context.store.set_tokens(jwt_factory(), "R1", None, user)

    assert await context.api.introspect_token("some-token") == {"active": True}
    assert json.loads(backend.calls[0].content) == {"token": "some-token"}
    await context.aclose()


@pytest.mark.asyncio
async def test_health_check(backend, make_context):
    backend.on("GET", "/health", httpx.Response(200, json={"status": "healthy"}))
    context = make_context()

    assert await context.api.health_check() == {"status": "healthy"}
    assert str(backend.calls[0].url) == "http://backend.test/health"
    await context.aclose()


@pytest.mark.asyncio
async def test_health_check_reports_unhealthy(backend, make_context):
    backend.on("GET", "/health", httpx.Response(503, json={}))
    context = make_context()

    health = await context.api.health_check()

    assert health["status"] == "unhealthy"
    assert "503" in health["error"]
    await context.aclose()


@pytest.mark.asyncio
async def test_stale_401_after_refresh_reuses_new_token(backend, make_context, jwt_factory, user):
    old = jwt_factory(jti="old")
    refreshes = []
    stale_requests = []
    release = asyncio.Event()

    async def data(request):
        if bearer(request) != f"Bearer {old}":
            return httpx.Response(200, json={"ok": True})
        stale_requests.append(request)
        if len(stale_requests) == 2:
            await release.wait()
        return httpx.Response(401, json={"error": "Token expired"})

    backend.on("GET", "/api/data", data)
    backend.on("POST", "/api/auth/refresh", refresh_handler(jwt_factory, user, refreshes))
    context = make_context()
    context.store.set_tokens(old, "R1", None, user)

    first = asyncio.ensure_future(context.api.request("/data"))
    second = asyncio.ensure_future(context.api.request("/data"))
    assert await first == {"ok": True}
    release.set()
    assert await second == {"ok": True}

    assert len(stale_requests) == 2
    assert len(refreshes) == 1
    assert context.store.refresh_token == "R2"
    await context.aclose()


def test_auth_endpoint_detection_uses_path_prefix():
    assert is_auth_endpoint("/auth/profile")
    assert not is_auth_endpoint("/customer/auth/settings")
    assert not is_auth_endpoint("/products")


@pytest.mark.asyncio
async def test_nested_auth_segment_still_refreshes(backend, make_context, jwt_factory, user):
    refreshes = []
    backend.on("GET", "/api/customer/auth/settings", [
        httpx.Response(401, json={"error": "Token expired"}),
        httpx.Response(200, json={"mfa": False}),
    ])
    backend.on("POST", "/api/auth/refresh", refresh_handler(jwt_factory, user, refreshes))
    context = make_context()
    context.store.set_tokens(jwt_factory(), "R1", None, user)

    assert await context.api.request("/customer/auth/settings") == {"mfa": False}
    assert len(refreshes) == 1
    await context.aclose()
