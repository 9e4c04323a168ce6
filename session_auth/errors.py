"""Error taxonomy for session authentication"""

from typing import Any, Optional


class SessionAuthError(Exception):
    """Base class for every error raised by the session client"""


class InvalidToken(SessionAuthError):
    """Token is malformed or its payload cannot be parsed"""


class ExpiredToken(SessionAuthError):
    """Token is structurally valid but past its ``exp`` claim"""


class RefreshFailed(SessionAuthError):
    """Refresh endpoint rejected the refresh token or was unreachable

    Always followed by a session clear.
    """


class AuthenticationFailed(SessionAuthError):
    """Backend still answers 401 after one refresh-and-retry cycle,
    or no refresh was possible"""


class NetworkError(SessionAuthError):
    """Transport-level failure (connection refused, DNS, timeout)"""

    def __init__(self, message: str, is_timeout: bool = False):
        super().__init__(message)
        self.is_timeout = is_timeout


class HttpError(SessionAuthError):
    """Non-2xx response other than 401

    Attributes:
        status: HTTP status code
        message: Server-supplied message, or a status-specific default
        payload: Decoded error body, if the server sent JSON
    """

    def __init__(self, status: int, message: str, payload: Optional[Any] = None):
        super().__init__(message)
        self.status = status
        self.message = message
        self.payload = payload

    def __str__(self) -> str:
        return f"HTTP {self.status}: {self.message}"


class ResponseDecodeError(SessionAuthError):
    """Response body does not match the endpoint's expected shape"""


class PkceValidationError(SessionAuthError):
    """PKCE verifier/challenge shape or mismatch failure"""


class UnsupportedMethod(PkceValidationError, ValueError):
    """Code challenge method other than S256 or plain"""


class InvalidParameter(SessionAuthError, ValueError):
    """Argument outside its permitted range"""
