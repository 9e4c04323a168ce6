"""Data models for the session client"""

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class TokenSet:
    """Tokens of record for the current session

    Attributes:
        access_token: Bearer token for API requests
        refresh_token: Token for renewing the access token (may be absent)
        id_token: OpenID Connect ID token (OAuth2 flow only)
        expires_at: Epoch seconds when the access token expires, derived from
            ``expires_in`` at assignment time or from the ``exp`` claim
        flow: ``"password"`` for /auth/login sessions, ``"oauth2"`` for the
            PKCE authorization-code flow
    """
    access_token: str
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    expires_at: Optional[float] = None
    flow: str = "password"


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a shape or claims check"""
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    claims: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class PKCEPair:
    """PKCE code verifier and its derived challenge

    Attributes:
        code_verifier: High-entropy random string (43-128 unreserved chars)
        code_challenge: Value sent in the authorization request
        method: ``S256`` or ``plain``
        entropy: Approximate entropy of the verifier in bits
        validation: Shape validation of the verifier
    """
    code_verifier: str
    code_challenge: str
    method: str = "S256"
    entropy: float = 0.0
    validation: Optional[ValidationResult] = None


@dataclass
class PendingAuthorization:
    """Short-lived state for one authorization round-trip (``pkce_data``)"""
    code_verifier: str
    code_challenge: str
    state: str
    nonce: Optional[str] = None
    method: str = "S256"
    created_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted camelCase layout"""
        return {
            "codeVerifier": self.code_verifier,
            "codeChallenge": self.code_challenge,
            "method": self.method,
            "state": self.state,
            "nonce": self.nonce,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingAuthorization":
        """Load from the persisted layout"""
        return cls(
            code_verifier=data["codeVerifier"],
            code_challenge=data["codeChallenge"],
            state=data["state"],
            nonce=data.get("nonce"),
            method=data.get("method", "S256"),
            created_at=float(data.get("createdAt", 0.0)),
        )


class SessionMetadata(BaseModel):
    """Server-side session descriptor, replaced wholesale on login/refresh"""
    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    session_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("session_id", "sessionId", "id"),
        serialization_alias="sessionId",
    )
    issued_at: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("issued_at", "issuedAt", "createdAt"),
        serialization_alias="issuedAt",
    )
    last_refreshed_at: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("last_refreshed_at", "lastRefreshedAt", "refreshedAt"),
        serialization_alias="lastRefreshedAt",
    )

    def refreshed(self, when: Optional[datetime.datetime] = None) -> "SessionMetadata":
        """Return a copy stamped with a new refresh time"""
        when = when or datetime.datetime.now(datetime.timezone.utc)
        return self.model_copy(update={"last_refreshed_at": when.isoformat()})


class UserInfo(BaseModel):
    """Authenticated user as reported by the backend"""
    model_config = ConfigDict(frozen=True, extra="allow")

    id: Optional[Union[int, str]] = None
    role: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    name: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "UserInfo":
        """Build a user from decoded token claims (``sub`` becomes ``id``)"""
        scopes = claims.get("scopes")
        return cls(
            id=claims.get("userId", claims.get("sub")),
            role=claims.get("role"),
            scopes=scopes if isinstance(scopes, list) else [],
            name=claims.get("name"),
            email=claims.get("email"),
        )


@dataclass(frozen=True)
class TokenGrant:
    """Tokens returned by a login, code exchange or refresh endpoint"""
    access_token: str
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    expires_in: Optional[int] = None
    user: Optional[UserInfo] = None
    session: Optional[SessionMetadata] = None


@dataclass(frozen=True)
class ExpirationInfo:
    """Timing view of the current access token"""
    expires_at: datetime.datetime
    issued_at: Optional[datetime.datetime]
    time_until_expiry: int
    time_since_issued: Optional[int]
    is_expired: bool
    expires_in: str
    age: Optional[str]


@dataclass(frozen=True)
class TokenStatus:
    """Coarse status of a token: valid, expiring_soon, expired or invalid"""
    status: str
    message: str
    validation: ValidationResult
    claims: Optional[Dict[str, Any]] = None
    timing: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ScopeCheck:
    """Result of comparing a token's scopes with the required ones"""
    valid: bool
    user_scopes: List[str] = field(default_factory=list)
    required_scopes: List[str] = field(default_factory=list)
    missing_scopes: List[str] = field(default_factory=list)
    reason: Optional[str] = None


@dataclass(frozen=True)
class SessionEvent:
    """Notification delivered synchronously to token store observers

    Attributes:
        kind: ``set``, ``refreshed``, ``synced`` or ``cleared``
        reason: Why the session changed (e.g. ``authentication_failed``)
    """
    kind: str
    reason: Optional[str]
    is_authenticated: bool
    user: Optional[UserInfo] = None
    expiration: Optional[ExpirationInfo] = None


@dataclass
class BatchRequest:
    """One entry of an :meth:`ApiClient.batch` call"""
    endpoint: str
    method: str = "GET"
    json: Optional[Any] = None
    params: Optional[Dict[str, Any]] = None
    headers: Optional[Dict[str, str]] = None


@dataclass
class BatchResult:
    """Per-request outcome of a batch"""
    success: bool
    data: Optional[Any] = None
    error: Optional[Exception] = None

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None


@dataclass(frozen=True)
class AuthorizationRequest:
    """Where to send the user to authorize, and the PKCE parameters bound to it

    Attributes:
        pkce_source: ``server`` when the backend supplied the verifier,
            ``local`` when it was generated here
    """
    authorization_url: str
    state: str
    code_challenge: str
    method: str = "S256"
    nonce: Optional[str] = None
    pkce_source: str = "server"
