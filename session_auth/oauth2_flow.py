"""OAuth2 authorization-code flow with PKCE"""

import logging
from typing import Optional
from urllib.parse import unquote

import httpx

from settings import OAUTH2_CLIENT_ID, PKCE_VERIFIER_LENGTH
from .errors import AuthenticationFailed, InvalidParameter, PkceValidationError, SessionAuthError
from .jwt_utils import decode_jwt, require_claims
from .models import AuthorizationRequest, PKCEPair, SessionMetadata, TokenSet, UserInfo
from .pkce import PKCEManager, calculate_entropy, generate_pkce_pair, validate_verifier, verify_challenge
from .responses import AuthorizeResponse, OAuth2TokenResponse, UserInfoResponse
from .token_store import TokenStore
from .transport import BackendTransport, decode_response


logger = logging.getLogger(__name__)


class OAuth2Flow:
    """Drives one authorization round-trip and the code exchange"""

    def __init__(
        self,
        store: TokenStore,
        transport: BackendTransport,
        pkce: PKCEManager,
        client_id: str = OAUTH2_CLIENT_ID,
        verifier_length: int = PKCE_VERIFIER_LENGTH,
    ):
        """Initialize OAuth2 flow

        Args:
            store: Token store receiving the exchanged tokens
            transport: Backend transport
            pkce: Keeper of the pending authorization
            client_id: OAuth2 client identifier
            verifier_length: Length of locally generated code verifiers
        """
        self.store = store
        self.transport = transport
        self.pkce = pkce
        self.client_id = client_id
        self.verifier_length = verifier_length

    async def start_authorization_flow(self) -> AuthorizationRequest:
        """Begin a new authorization round-trip

        Any previous pending authorization is discarded. A verifier/challenge
        pair supplied by the server is checked before it is stored; without
        one, an S256 pair is generated locally and its challenge added to the
        authorization URL.

        Raises:
            PkceValidationError: If the server-supplied pair does not verify
        """
        self.pkce.clear()

        response = await self.transport.send(
            "GET",
            "/oauth2/authorize",
            params={"client_id": self.client_id},
        )
        data = decode_response(response, AuthorizeResponse).data
        server_pkce = data.pkce
        authorization_url = data.authorization_url

        if server_pkce.code_verifier and server_pkce.code_challenge:
            if not verify_challenge(server_pkce.code_verifier, server_pkce.code_challenge, server_pkce.method):
                raise PkceValidationError("Server PKCE challenge does not match its verifier")
            validation = validate_verifier(server_pkce.code_verifier)
            if not validation.valid:
                raise PkceValidationError(f"Invalid code verifier: {', '.join(validation.errors)}")
            pair = PKCEPair(
                code_verifier=server_pkce.code_verifier,
                code_challenge=server_pkce.code_challenge,
                method=server_pkce.method,
                entropy=calculate_entropy(server_pkce.code_verifier),
                validation=validation,
            )
            source = "server"
        else:
            pair = generate_pkce_pair(self.verifier_length, "S256")
            authorization_url = str(
                httpx.URL(authorization_url).copy_merge_params({
                    "code_challenge": pair.code_challenge,
                    "code_challenge_method": pair.method,
                })
            )
            source = "local"

        self.pkce.save(pair, data.state, data.nonce)
        logger.info(f"Authorization flow started (PKCE {pair.method}, {source} verifier)")

        return AuthorizationRequest(
            authorization_url=authorization_url,
            state=data.state,
            code_challenge=pair.code_challenge,
            method=pair.method,
            nonce=data.nonce,
            pkce_source=source,
        )

    async def exchange_code(
        self,
        code: str,
        state: Optional[str] = None,
        code_verifier: Optional[str] = None,
    ) -> TokenSet:
        """Exchange an authorization code for tokens

        The pending authorization is checked (state and verifier) before any
        request is sent, and consumed before the token request so that it
        can never be used twice.

        Args:
            code: Authorization code from the callback (may be URL-encoded)
            state: State from the callback, compared with the pending one
            code_verifier: Verifier override (default: the stored one)

        Raises:
            InvalidParameter: If no code is given
            PkceValidationError: Missing pending data, state mismatch, a
                verifier that does not match the stored challenge, or an ID
                token bound to another nonce
            InvalidToken / ExpiredToken: If the returned ID token is unusable
        """
        if not code:
            raise InvalidParameter("Authorization code is required")
        code = unquote(code)

        pending = self.pkce.load()
        if pending is None:
            raise PkceValidationError("Missing PKCE data. Please restart the authorization flow.")

        if state is not None and state != pending.state:
            raise PkceValidationError("State mismatch, possible CSRF attack")

        verifier = code_verifier or pending.code_verifier
        if not verify_challenge(verifier, pending.code_challenge, pending.method):
            raise PkceValidationError("Code verifier does not match the stored challenge")

        self.pkce.consume()

        response = await self.transport.send(
            "POST",
            "/oauth2/token",
            json={"code": code, "state": pending.state, "code_verifier": verifier},
        )
        data = decode_response(response, OAuth2TokenResponse).data

        if data.id_token:
            id_claims = require_claims(data.id_token)
            if pending.nonce and id_claims.get("nonce") not in (None, pending.nonce):
                raise PkceValidationError("ID token nonce does not match the authorization request")

        user = await self._resolve_user(data.access_token, data.id_token)
        claims = decode_jwt(data.access_token) or {}
        session = SessionMetadata(session_id=claims.get("sessionId")) if claims.get("sessionId") else None

        tokens = self.store.set_tokens(
            data.access_token,
            data.refresh_token,
            session,
            user,
            id_token=data.id_token,
            expires_in=data.expires_in,
            flow="oauth2",
        )
        logger.info("Authorization code exchanged for tokens")
        return tokens

    def abandon_flow(self) -> None:
        """Discard the pending authorization"""
        self.pkce.clear()
        logger.info("Authorization flow abandoned")

    async def get_user_info(self) -> UserInfo:
        """Fetch the current user from the userinfo endpoint

        Raises:
            AuthenticationFailed: If there is no session or the token is rejected
        """
        return await self._fetch_user_info(self.store.access_token)

    async def _fetch_user_info(self, access_token: Optional[str]) -> UserInfo:
        if not access_token:
            raise AuthenticationFailed("No access token available")
        response = await self.transport.send("GET", "/oauth2/userinfo", bearer=access_token)
        profile = dict(decode_response(response, UserInfoResponse).data)
        profile.setdefault("id", profile.get("sub"))
        return UserInfo.model_validate(profile)

    async def _resolve_user(self, access_token: str, id_token: Optional[str]) -> UserInfo:
        try:
            return await self._fetch_user_info(access_token)
        except SessionAuthError as e:
            logger.warning(f"Userinfo unavailable, using token claims: {e}")
        claims = decode_jwt(id_token) or decode_jwt(access_token) or {}
        return UserInfo.from_claims(claims)
