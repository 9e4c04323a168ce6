"""HTTP transport to the authentication backend

Wraps an ``httpx.AsyncClient`` and turns transport and status failures into
the session error taxonomy. Knows nothing about tokens beyond attaching a
bearer header it is handed.
"""

import logging
from typing import Any, Dict, Optional, Type, TypeVar

import httpx
from pydantic import ValidationError

from settings import API_BASE_URL, CONNECT_TIMEOUT, REQUEST_TIMEOUT
from .errors import AuthenticationFailed, HttpError, NetworkError, ResponseDecodeError
from .responses import BackendResponse


logger = logging.getLogger(__name__)

ResponseT = TypeVar("ResponseT", bound=BackendResponse)

DEFAULT_ERROR_MESSAGES = {
    403: "Access forbidden",
    404: "Resource not found",
    429: "Rate limit exceeded",
    500: "Internal server error",
}


class BackendTransport:
    """Sends requests to the backend API"""

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize transport

        Args:
            base_url: Backend API root; endpoints are appended to it
            client: Shared httpx client (created and owned here if None)
        """
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(REQUEST_TIMEOUT, connect=CONNECT_TIMEOUT)
        )

    def url(self, endpoint: str) -> str:
        """Resolve an endpoint relative to the API root"""
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.base_url}{endpoint}"

    async def send(
        self,
        method: str,
        endpoint: str,
        *,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        bearer: Optional[str] = None,
    ) -> httpx.Response:
        """Send one request

        Raises:
            NetworkError: On connection, DNS or timeout failures
        """
        request_headers = {"Content-Type": "application/json", **(headers or {})}
        if bearer:
            request_headers["Authorization"] = f"Bearer {bearer}"

        logger.debug(f"{method} {endpoint}")
        try:
            return await self._client.request(
                method,
                self.url(endpoint),
                json=json,
                params=params,
                headers=request_headers,
            )
        except httpx.TimeoutException as e:
            logger.error(f"{method} {endpoint} timed out: {e}")
            raise NetworkError(f"Request to {endpoint} timed out", is_timeout=True) from e
        except httpx.RequestError as e:
            logger.error(f"{method} {endpoint} failed: {e}")
            raise NetworkError(f"Network error: Unable to connect to server ({e})") from e

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it"""
        if self._owns_client:
            await self._client.aclose()


def error_payload(response: httpx.Response) -> Dict[str, Any]:
    """Decoded error body, or an empty dict when it is not a JSON object"""
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def server_message(payload: Dict[str, Any]) -> Optional[str]:
    """Extract the human-readable message a server put in an error body"""
    for key in ("error", "message"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
        if isinstance(value, dict) and isinstance(value.get("message"), str):
            return value["message"]
    return None


def raise_for_status(response: httpx.Response) -> None:
    """Raise the taxonomy error for a non-2xx response

    Raises:
        AuthenticationFailed: For 401
        HttpError: For any other non-2xx status
    """
    if response.is_success:
        return

    payload = error_payload(response)
    message = server_message(payload)
    status = response.status_code

    if status == 401:
        raise AuthenticationFailed(message or "Authentication failed")

    raise HttpError(
        status,
        message or DEFAULT_ERROR_MESSAGES.get(status, f"Request failed with status {status}"),
        payload or None,
    )


def read_json(response: httpx.Response) -> Any:
    """Decode a successful response body (None for an empty body)

    Raises:
        ResponseDecodeError: If the body is not valid JSON
    """
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError as e:
        raise ResponseDecodeError(f"Invalid JSON in response from {response.request.url}: {e}") from e


def decode_response(response: httpx.Response, model: Type[ResponseT]) -> ResponseT:
    """Validate a backend response against its endpoint model

    Raises:
        AuthenticationFailed / HttpError: For non-2xx statuses
        HttpError: When the envelope reports ``success: false``
        ResponseDecodeError: When the body does not match ``model``
    """
    raise_for_status(response)
    payload = read_json(response)

    if not isinstance(payload, dict):
        raise ResponseDecodeError(f"Expected a JSON object for {model.__name__}")

    if payload.get("success") is False:
        raise HttpError(
            response.status_code,
            server_message(payload) or "Request was rejected by the server",
            payload,
        )

    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise ResponseDecodeError(f"Malformed {model.__name__}: {e}") from e
