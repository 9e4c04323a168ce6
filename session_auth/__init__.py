"""JWT session client

Token lifecycle management for an OAuth2/JWT backend: token storage, expiry
tracking, single-flight refresh, authenticated requests and the PKCE
authorization-code flow.

Everything hangs off one explicit :class:`SessionContext`; construct it once
per session and pass it (or its parts) to whoever needs them.
"""

import contextlib
import logging
import time
from typing import Callable, Optional

import httpx

from settings import API_BASE_URL, PKCE_FILE, PKCE_MAX_AGE, REFRESH_BUFFER_SECONDS, TOKEN_FILE
from .api_client import ApiClient
from .broadcast import BroadcastChannel, StorageChange
from .errors import (
    AuthenticationFailed,
    ExpiredToken,
    HttpError,
    InvalidParameter,
    InvalidToken,
    NetworkError,
    PkceValidationError,
    RefreshFailed,
    ResponseDecodeError,
    SessionAuthError,
    UnsupportedMethod,
)
from .models import (
    AuthorizationRequest,
    BatchRequest,
    BatchResult,
    ExpirationInfo,
    PKCEPair,
    SessionEvent,
    SessionMetadata,
    TokenSet,
    UserInfo,
    ValidationResult,
)
from .oauth2_flow import OAuth2Flow
from .pkce import PKCEManager
from .storage import FileStorage, KeyValueStorage, MemoryStorage, open_storage
from .token_refresh import RefreshCoordinator, RefreshState, SessionRefresher
from .token_store import TokenStore
from .transport import BackendTransport


logger = logging.getLogger(__name__)


class SessionContext:
    """Wires the token store, refresh coordinator, API client and OAuth2 flow

    Contexts that should stay in sync (several "tabs" of one user) share the
    same durable storage and broadcast channel.
    """

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        storage: Optional[KeyValueStorage] = None,
        pkce_storage: Optional[KeyValueStorage] = None,
        channel: Optional[BroadcastChannel] = None,
        client: Optional[httpx.AsyncClient] = None,
        refresh_buffer: float = REFRESH_BUFFER_SECONDS,
        clock: Callable[[], float] = time.time,
        auto_refresh: bool = True,
    ):
        """Initialize session context

        Args:
            base_url: Backend API root
            storage: Durable session storage (default: in-memory)
            pkce_storage: Short-lived storage for the pending authorization
            channel: Broadcast channel shared with sibling contexts
            client: httpx client to send requests with (e.g. a mock transport)
            refresh_buffer: Seconds before expiry at which to refresh
            clock: Time source returning epoch seconds
            auto_refresh: Refresh proactively before expiry. Disable for
                short-lived local use so that an unreachable backend cannot
                clear the stored session
        """
        self.channel = channel or BroadcastChannel()
        self.store = TokenStore(storage, self.channel, clock=clock)
        self.transport = BackendTransport(base_url, client)
        self.refresher = SessionRefresher(self.transport)
        self.coordinator = RefreshCoordinator(
            self.store, self.refresher, buffer=refresh_buffer, auto_refresh=auto_refresh
        )
        self.api = ApiClient(self.store, self.transport, self.coordinator)
        self.pkce = PKCEManager(pkce_storage, max_age=PKCE_MAX_AGE, clock=clock)
        self.oauth2 = OAuth2Flow(self.store, self.transport, self.pkce)

    @classmethod
    def from_settings(cls, **kwargs) -> "SessionContext":
        """Context backed by the configured token and PKCE files"""
        kwargs.setdefault("storage", open_storage(TOKEN_FILE))
        kwargs.setdefault("pkce_storage", open_storage(PKCE_FILE))
        return cls(**kwargs)

    async def aclose(self) -> None:
        """Stop scheduling refreshes and release the HTTP client

        A refresh already in flight is allowed to finish first.
        """
        if self.coordinator.is_refreshing:
            with contextlib.suppress(RefreshFailed):
                await self.coordinator.refresh()
        self.coordinator.close()
        self.store.close()
        await self.transport.aclose()
        logger.debug("Session context closed")

    async def __aenter__(self) -> "SessionContext":
        # Tokens loaded from storage get their refresh scheduled once a loop runs
        self.coordinator.schedule()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


__all__ = [
    "ApiClient",
    "AuthenticationFailed",
    "AuthorizationRequest",
    "BackendTransport",
    "BatchRequest",
    "BatchResult",
    "BroadcastChannel",
    "ExpirationInfo",
    "ExpiredToken",
    "FileStorage",
    "HttpError",
    "InvalidParameter",
    "InvalidToken",
    "KeyValueStorage",
    "MemoryStorage",
    "NetworkError",
    "OAuth2Flow",
    "PKCEManager",
    "PKCEPair",
    "PkceValidationError",
    "RefreshCoordinator",
    "RefreshFailed",
    "RefreshState",
    "ResponseDecodeError",
    "SessionAuthError",
    "SessionContext",
    "SessionEvent",
    "SessionMetadata",
    "SessionRefresher",
    "StorageChange",
    "TokenSet",
    "TokenStore",
    "UserInfo",
    "UnsupportedMethod",
    "ValidationResult",
    "open_storage",
]
