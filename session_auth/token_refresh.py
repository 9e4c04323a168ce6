"""Token refresh: proactive scheduling and single-flight renewal"""

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Optional

from settings import CLIENT_ID, REFRESH_BUFFER_SECONDS
from .errors import RefreshFailed, SessionAuthError
from .models import SessionEvent, TokenGrant, TokenSet
from .responses import OAuth2RefreshResponse, RefreshResponse
from .token_store import TokenStore
from .transport import BackendTransport, decode_response


logger = logging.getLogger(__name__)

Refresher = Callable[[TokenSet], Awaitable[TokenGrant]]


class RefreshState(enum.Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    REFRESHING = "refreshing"
    FAILED = "failed"


class SessionRefresher:
    """Exchanges a refresh token at the endpoint matching the session's flow

    Password sessions use ``POST /auth/refresh``; OAuth2 sessions use
    ``POST /oauth2/refresh``, which does not rotate the refresh token.
    """

    def __init__(self, transport: BackendTransport, client_id: str = CLIENT_ID):
        self.transport = transport
        self.client_id = client_id

    async def __call__(self, tokens: TokenSet) -> TokenGrant:
        if tokens.flow == "oauth2":
            return await self._refresh_oauth2(tokens)
        return await self._refresh_password(tokens)

    async def _refresh_password(self, tokens: TokenSet) -> TokenGrant:
        response = await self.transport.send(
            "POST",
            "/auth/refresh",
            json={"refresh_token": tokens.refresh_token, "clientId": self.client_id},
        )
        result = decode_response(response, RefreshResponse)
        return TokenGrant(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
            user=result.user,
            session=result.session,
        )

    async def _refresh_oauth2(self, tokens: TokenSet) -> TokenGrant:
        response = await self.transport.send(
            "POST",
            "/oauth2/refresh",
            json={"refresh_token": tokens.refresh_token},
        )
        data = decode_response(response, OAuth2RefreshResponse).data
        return TokenGrant(
            access_token=data.access_token,
            refresh_token=data.refresh_token,
            expires_in=data.expires_in,
        )


class RefreshCoordinator:
    """Keeps the access token fresh for one token store

    At most one refresh request is in flight at a time: concurrent callers
    await the same task. A proactive refresh is scheduled ``buffer`` seconds
    before the access token expires whenever the store's tokens change.
    """

    def __init__(
        self,
        store: TokenStore,
        refresher: Refresher,
        buffer: float = REFRESH_BUFFER_SECONDS,
        auto_refresh: bool = True,
    ):
        """Initialize refresh coordinator

        Args:
            store: Token store whose session is kept fresh
            refresher: Coroutine function performing the refresh request
            buffer: Seconds before expiry at which to refresh
            auto_refresh: Schedule proactive refreshes; when False, tokens are
                only refreshed on an explicit or on-demand request
        """
        self.store = store
        self.refresher = refresher
        self.buffer = buffer
        self.auto_refresh = auto_refresh
        self.state = RefreshState.IDLE
        self.refresh_count = 0

        self._task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._unsubscribe = store.subscribe(self._on_session_event)

        self.schedule()

    @property
    def is_refreshing(self) -> bool:
        return self._task is not None and not self._task.done()

    def _on_session_event(self, event: SessionEvent) -> None:
        if event.kind == "cleared":
            self.cancel()
        else:
            self.schedule()

    def schedule(self) -> Optional[float]:
        """(Re)schedule the proactive refresh for the current tokens

        Returns:
            Seconds until the refresh fires, or None if nothing was scheduled
        """
        self._cancel_timer()

        tokens = self.store.tokens
        if not self.auto_refresh or tokens is None or not tokens.refresh_token or tokens.expires_at is None:
            self._settle()
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, proactive refresh not scheduled")
            return None

        delay = tokens.expires_at - self.buffer - self.store.clock()
        if delay <= 0:
            logger.info("Access token is inside the refresh window, refreshing now")
            self._refresh_in_background()
            return 0.0

        self._timer = loop.call_later(delay, self._refresh_in_background)
        self._settle()
        logger.debug(f"Proactive refresh scheduled in {delay:.0f}s")
        return delay

    def _refresh_in_background(self) -> None:
        self._timer = None
        if self.is_refreshing:
            return
        self._start()

    def _start(self) -> asyncio.Task:
        self._cancel_timer()
        self.state = RefreshState.REFRESHING
        self._task = asyncio.create_task(self._run(self.store.tokens, self.store.generation))
        self._task.add_done_callback(self._on_task_done)
        return self._task

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        # Background refreshes have no awaiter; retrieve the outcome here
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Refresh task finished with error: {task.exception()}")

    async def refresh(self) -> TokenSet:
        """Refresh the access token, joining an in-flight refresh if any

        Returns:
            The new tokens of record

        Raises:
            RefreshFailed: If the refresh was rejected or unreachable; the
                session has been cleared
        """
        task = self._task if self.is_refreshing else self._start()
        return await asyncio.shield(task)

    async def force_refresh(self) -> bool:
        """User-initiated refresh; returns False instead of raising"""
        try:
            await self.refresh()
            return True
        except RefreshFailed as e:
            logger.warning(f"Forced refresh failed: {e}")
            return False

    async def ensure_fresh(self) -> Optional[TokenSet]:
        """Refresh first if the access token has already expired"""
        if self.store.refresh_token and self.store.is_expired():
            logger.info("Access token expired, refreshing before request")
            return await self.refresh()
        return self.store.tokens

    async def _run(self, tokens: Optional[TokenSet], generation: int) -> TokenSet:
        logger.info("Refreshing access token")

        if tokens is None or not tokens.refresh_token:
            error = RefreshFailed("No refresh token available")
            self._fail(generation, error)
            raise error

        try:
            grant = await self.refresher(tokens)
        except SessionAuthError as e:
            self._fail(generation, e)
            raise RefreshFailed(f"Token refresh failed: {e}") from e

        if self.store.generation != generation:
            logger.info("Session changed during refresh, discarding result")
            self._settle(finished=True)
            current = self.store.tokens
            if current is None:
                raise RefreshFailed("Session was cleared during refresh")
            return current

        new_tokens = self.store.apply_refresh(grant)
        self.refresh_count += 1
        self._settle(finished=True)
        return new_tokens

    def _fail(self, generation: int, error: SessionAuthError) -> None:
        logger.error(f"Token refresh failed: {error}")
        if self.store.generation != generation:
            # A newer session replaced the one being refreshed; leave it alone
            self._settle(finished=True)
            return
        self.store.clear(reason="refresh_failed")
        self.state = RefreshState.FAILED

    def _settle(self, finished: bool = False) -> None:
        """Leave REFRESHING only when the in-flight refresh itself finishes"""
        if self.is_refreshing and not finished:
            return
        self.state = RefreshState.SCHEDULED if self._timer is not None else RefreshState.IDLE

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def cancel(self) -> None:
        """Cancel the scheduled refresh; an in-flight request keeps running"""
        self._cancel_timer()
        self._settle()

    def close(self) -> None:
        """Cancel scheduling and stop following the store"""
        self.cancel()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
