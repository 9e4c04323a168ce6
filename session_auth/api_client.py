"""Authenticated request client

Injects the bearer token, recovers from one 401 with a coordinated
refresh-and-retry and classifies failures into the session error taxonomy.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union
from urllib.parse import urljoin

import httpx

from settings import CLIENT_ID
from .errors import AuthenticationFailed, RefreshFailed, SessionAuthError
from .models import BatchRequest, BatchResult
from .responses import LoginResponse, LogoutResponse
from .token_refresh import RefreshCoordinator
from .token_store import TokenStore
from .transport import BackendTransport, decode_response, error_payload, raise_for_status, read_json, server_message


logger = logging.getLogger(__name__)

AUTH_ENDPOINT_PREFIX = "/auth/"


def is_auth_endpoint(endpoint: str) -> bool:
    """Authentication endpoints never trigger refresh-and-retry

    Only paths under the API root's ``/auth/`` prefix count; a route such as
    ``/customer/auth/settings`` is an ordinary protected endpoint.
    """
    return endpoint.startswith(AUTH_ENDPOINT_PREFIX)


class ApiClient:
    """Client for the backend API on behalf of the current session"""

    def __init__(
        self,
        store: TokenStore,
        transport: BackendTransport,
        coordinator: RefreshCoordinator,
        client_id: str = CLIENT_ID,
    ):
        self.store = store
        self.transport = transport
        self.coordinator = coordinator
        self.client_id = client_id

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        *,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Send an authenticated request and return the decoded JSON body

        Args:
            endpoint: Path relative to the API root (e.g. ``/products``)
            method: HTTP method
            json: JSON request body
            params: Query parameters
            headers: Extra headers

        Returns:
            Decoded JSON body, or None for an empty body

        Raises:
            AuthenticationFailed: 401 that a refresh could not cure
            HttpError: Any other non-2xx status
            NetworkError: Connection, DNS or timeout failure
            ResponseDecodeError: Body is not valid JSON
        """
        response = await self._send_authenticated(endpoint, method, json=json, params=params, headers=headers)
        raise_for_status(response)
        return read_json(response)

    async def _send_authenticated(
        self,
        endpoint: str,
        method: str,
        **kwargs,
    ) -> httpx.Response:
        """Send with the current bearer token; one refresh-and-retry on 401"""
        if not is_auth_endpoint(endpoint):
            try:
                await self.coordinator.ensure_fresh()
            except RefreshFailed as e:
                raise AuthenticationFailed("Session expired, please log in again") from e

        bearer = self.store.access_token
        response = await self.transport.send(method, endpoint, bearer=bearer, **kwargs)
        if response.status_code != 401:
            return response

        message = server_message(error_payload(response)) or "Authentication failed"

        current = self.store.access_token
        if not is_auth_endpoint(endpoint) and current and current != bearer:
            # Another caller already replaced the token this request carried
            logger.info(f"{method} {endpoint} returned 401 for a superseded token, retrying with the current one")
        elif is_auth_endpoint(endpoint) or not self.store.refresh_token:
            if bearer:
                self.store.clear(reason="authentication_failed")
            raise AuthenticationFailed(message)
        else:
            logger.info(f"{method} {endpoint} returned 401, refreshing and retrying once")
            try:
                await self.coordinator.refresh()
            except RefreshFailed as e:
                raise AuthenticationFailed("Session expired, please log in again") from e

        retry = await self.transport.send(method, endpoint, bearer=self.store.access_token, **kwargs)
        if retry.status_code == 401:
            logger.warning(f"{method} {endpoint} still unauthorized after refresh")
            self.store.clear(reason="authentication_failed")
            raise AuthenticationFailed(server_message(error_payload(retry)) or message)
        return retry

    async def batch(self, requests: Iterable[Union[BatchRequest, Dict[str, Any]]]) -> List[BatchResult]:
        """Run requests one after another, capturing each outcome

        A failing request does not stop the batch; only session errors are
        captured, anything else propagates.
        """
        results = []
        for item in requests:
            req = item if isinstance(item, BatchRequest) else BatchRequest(**item)
            try:
                data = await self.request(
                    req.endpoint,
                    req.method,
                    json=req.json,
                    params=req.params,
                    headers=req.headers,
                )
                results.append(BatchResult(success=True, data=data))
            except SessionAuthError as e:
                logger.debug(f"Batch request {req.method} {req.endpoint} failed: {e}")
                results.append(BatchResult(success=False, error=e))
        return results

    # Authentication endpoints

    async def login(self, email: str, password: str, client_id: Optional[str] = None) -> LoginResponse:
        """Log in with email and password and store the new session"""
        response = await self.transport.send(
            "POST",
            "/auth/login",
            json={"email": email, "password": password, "clientId": client_id or self.client_id},
        )
        result = decode_response(response, LoginResponse)
        self.store.set_tokens(
            result.access_token,
            result.refresh_token,
            result.session,
            result.user,
            expires_in=result.expires_in,
        )
        logger.info(f"Logged in as {email}")
        return result

    async def logout(self) -> bool:
        """Revoke the current session; local state is cleared even if the call fails

        Returns:
            True if the server acknowledged the logout
        """
        acknowledged = False
        try:
            if self.store.access_token:
                response = await self._send_authenticated(
                    "/auth/logout",
                    "POST",
                    json={
                        "access_token": self.store.access_token,
                        "refresh_token": self.store.refresh_token,
                    },
                )
                acknowledged = decode_response(response, LogoutResponse).success
        except SessionAuthError as e:
            logger.warning(f"Logout request failed, clearing local session anyway: {e}")
        finally:
            self.store.clear(reason="logout")
        return acknowledged

    async def logout_all(self) -> bool:
        """Revoke every session of the current user, then clear local state"""
        acknowledged = False
        try:
            if self.store.access_token:
                response = await self._send_authenticated(
                    "/auth/logout-all",
                    "POST",
                    json={"access_token": self.store.access_token},
                )
                acknowledged = decode_response(response, LogoutResponse).success
        except SessionAuthError as e:
            logger.warning(f"Logout-all request failed, clearing local session anyway: {e}")
        finally:
            self.store.clear(reason="logout")
        return acknowledged

    async def get_profile(self) -> Any:
        return await self.request("/auth/profile")

    async def introspect_token(self, token: str) -> Any:
        return await self.request("/tokens/introspect", "POST", json={"token": token})

    async def health_check(self) -> Dict[str, Any]:
        """Query the server health endpoint next to the API root"""
        url = urljoin(self.transport.base_url + "/", "../health")
        try:
            response = await self.transport.send("GET", url)
            raise_for_status(response)
            return read_json(response) or {"status": "healthy"}
        except SessionAuthError as e:
            logger.warning(f"Health check failed: {e}")
            return {"status": "unhealthy", "error": str(e)}
