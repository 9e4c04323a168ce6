"""
Pydantic models for backend responses, validated at the transport boundary.
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import SessionMetadata, UserInfo


class BackendResponse(BaseModel):
    """Envelope shared by every backend endpoint"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    success: bool = True
    message: Optional[str] = None


class LoginResponse(BackendResponse):
    """POST /auth/login"""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    session: Optional[SessionMetadata] = None
    user: Optional[UserInfo] = None


class RefreshResponse(BackendResponse):
    """POST /auth/refresh"""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    session: Optional[SessionMetadata] = None
    user: Optional[UserInfo] = None


class LogoutResponse(BackendResponse):
    """POST /auth/logout and /auth/logout-all"""


class PkceInfo(BaseModel):
    """PKCE parameters returned by the authorize endpoint"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enabled: bool = False
    code_verifier: Optional[str] = Field(default=None, alias="codeVerifier")
    code_challenge: Optional[str] = Field(default=None, alias="codeChallenge")
    method: str = Field(default="S256", alias="codeChallengeMethod")


class AuthorizeData(BaseModel):
    """Payload of GET /oauth2/authorize"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    authorization_url: str = Field(alias="authorizationUrl")
    state: str
    nonce: Optional[str] = None
    pkce: PkceInfo = Field(default_factory=PkceInfo)


class AuthorizeResponse(BackendResponse):
    """GET /oauth2/authorize"""
    data: AuthorizeData


class OAuth2TokenData(BaseModel):
    """Payload of POST /oauth2/token"""
    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "Bearer"


class OAuth2TokenResponse(BackendResponse):
    """POST /oauth2/token"""
    data: OAuth2TokenData


class OAuth2RefreshData(BaseModel):
    """Payload of POST /oauth2/refresh"""
    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "Bearer"


class OAuth2RefreshResponse(BackendResponse):
    """POST /oauth2/refresh"""
    data: OAuth2RefreshData


class UserInfoResponse(BackendResponse):
    """GET /oauth2/userinfo"""
    data: Dict[str, Any] = Field(default_factory=dict)
