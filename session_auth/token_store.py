"""Token store: the tokens of record for one session context

Holds the access/refresh/ID tokens, session metadata and user, persists them
to durable key-value storage and keeps other contexts attached to the same
broadcast channel in step (last writer wins).
"""

import json
import logging
import math
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from settings import REFRESH_BUFFER_SECONDS
from . import jwt_utils
from .broadcast import BroadcastChannel, StorageChange
from .errors import InvalidParameter
from .models import ExpirationInfo, SessionEvent, SessionMetadata, TokenGrant, TokenSet, UserInfo
from .storage import KeyValueStorage, MemoryStorage


logger = logging.getLogger(__name__)

# Durable storage keys
ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"
ID_TOKEN_KEY = "idToken"
EXPIRES_AT_KEY = "expiresAt"
AUTH_FLOW_KEY = "authFlow"
SESSION_DATA_KEY = "sessionData"
USER_DATA_KEY = "userData"

STORAGE_KEYS = (
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    ID_TOKEN_KEY,
    EXPIRES_AT_KEY,
    AUTH_FLOW_KEY,
    SESSION_DATA_KEY,
    USER_DATA_KEY,
)

# Changes to these keys from another context trigger a reload
SYNC_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY)

Observer = Callable[[SessionEvent], None]


def _preview(token: Optional[str]) -> Optional[str]:
    return token[:20] + "..." if token else None


class TokenStore:
    """Owns the current TokenSet, session metadata and user"""

    def __init__(
        self,
        storage: Optional[KeyValueStorage] = None,
        channel: Optional[BroadcastChannel] = None,
        clock: Callable[[], float] = time.time,
        context_id: Optional[str] = None,
    ):
        """Initialize token store and load any persisted session

        Args:
            storage: Durable storage (default: in-memory)
            channel: Broadcast channel shared with other contexts
            clock: Time source returning epoch seconds
            context_id: Identifier of this context on the channel
        """
        self.storage = storage if storage is not None else MemoryStorage()
        self.channel = channel
        self.clock = clock
        self.context_id = context_id or f"context-{uuid.uuid4().hex[:8]}"
        self.generation = 0

        self._tokens: Optional[TokenSet] = None
        self._session: Optional[SessionMetadata] = None
        self._user: Optional[UserInfo] = None
        self._observers: List[Observer] = []

        self._unsubscribe = None
        if channel is not None:
            self._unsubscribe = channel.subscribe(self.context_id, self._on_storage_change)

        self._load_from_storage()

    # Accessors

    @property
    def tokens(self) -> Optional[TokenSet]:
        return self._tokens

    @property
    def access_token(self) -> Optional[str]:
        return self._tokens.access_token if self._tokens else None

    @property
    def refresh_token(self) -> Optional[str]:
        return self._tokens.refresh_token if self._tokens else None

    @property
    def id_token(self) -> Optional[str]:
        return self._tokens.id_token if self._tokens else None

    @property
    def expires_at(self) -> Optional[float]:
        return self._tokens.expires_at if self._tokens else None

    @property
    def flow(self) -> Optional[str]:
        return self._tokens.flow if self._tokens else None

    @property
    def session(self) -> Optional[SessionMetadata]:
        return self._session

    @property
    def user(self) -> Optional[UserInfo]:
        return self._user

    # Observers

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer for session events; returns an unsubscribe function"""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self, kind: str, reason: Optional[str] = None) -> None:
        event = SessionEvent(
            kind=kind,
            reason=reason,
            is_authenticated=self.is_authenticated(),
            user=self._user,
            expiration=self.get_expiration_info(),
        )
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception(f"Session observer failed handling '{kind}' event")

    # Mutations

    def set_tokens(
        self,
        access_token: str,
        refresh_token: Optional[str] = None,
        session: Optional[Union[SessionMetadata, Dict[str, Any]]] = None,
        user: Optional[Union[UserInfo, Dict[str, Any]]] = None,
        *,
        id_token: Optional[str] = None,
        expires_in: Optional[float] = None,
        flow: str = "password",
    ) -> TokenSet:
        """Replace the whole session at once

        ``expires_at`` is computed from ``expires_in`` when given, otherwise
        from the access token's ``exp`` claim.

        Raises:
            InvalidParameter: If the access token is empty
        """
        if not access_token:
            raise InvalidParameter("Access token is required")

        tokens = TokenSet(
            access_token=access_token,
            refresh_token=refresh_token or None,
            id_token=id_token or None,
            expires_at=self._compute_expires_at(access_token, expires_in),
            flow=flow,
        )
        self._assign(tokens, self._coerce_session(session), self._coerce_user(user))
        logger.info(f"Tokens set ({flow} flow), session {self._session.session_id if self._session else None}")
        self._notify("set")
        return tokens

    def apply_refresh(self, grant: TokenGrant) -> TokenSet:
        """Apply the result of a successful refresh

        The previous refresh and ID tokens are kept when the server does not
        rotate them. User and session are replaced when the server returns
        them; otherwise the session is re-stamped with the refresh time.

        Raises:
            InvalidParameter: If the grant carries no access token
        """
        if not grant.access_token:
            raise InvalidParameter("Refresh response did not include an access token")

        previous = self._tokens
        tokens = TokenSet(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or (previous.refresh_token if previous else None),
            id_token=grant.id_token or (previous.id_token if previous else None),
            expires_at=self._compute_expires_at(grant.access_token, grant.expires_in),
            flow=previous.flow if previous else "password",
        )

        if grant.session is not None:
            session = grant.session.refreshed()
        elif self._session is not None:
            session = self._session.refreshed()
        else:
            session = None

        self._assign(tokens, session, grant.user or self._user)
        logger.info("Tokens refreshed")
        self._notify("refreshed")
        return tokens

    def clear(self, reason: str = "cleared") -> None:
        """Wipe memory and durable state and tell observers why"""
        had_session = self._tokens is not None
        self._tokens = None
        self._session = None
        self._user = None
        self.generation += 1
        self._persist()

        if had_session:
            logger.info(f"Session cleared ({reason})")
        else:
            logger.debug(f"Clear requested with no active session ({reason})")
        self._notify("cleared", reason)

    def close(self) -> None:
        """Detach from the broadcast channel and drop observers"""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._observers.clear()

    def _assign(
        self,
        tokens: TokenSet,
        session: Optional[SessionMetadata],
        user: Optional[UserInfo],
    ) -> None:
        self._tokens = tokens
        self._session = session
        self._user = user
        self.generation += 1
        self._persist()

    def _compute_expires_at(self, access_token: str, expires_in: Optional[float]) -> Optional[float]:
        if expires_in is not None and math.isfinite(float(expires_in)):
            return self.clock() + float(expires_in)
        claims = jwt_utils.decode_jwt(access_token)
        exp = claims.get("exp") if claims else None
        if isinstance(exp, (int, float)) and not isinstance(exp, bool) and math.isfinite(exp):
            return float(exp)
        return None

    @staticmethod
    def _coerce_session(session: Any) -> Optional[SessionMetadata]:
        if session is None or isinstance(session, SessionMetadata):
            return session
        return SessionMetadata.model_validate(session)

    @staticmethod
    def _coerce_user(user: Any) -> Optional[UserInfo]:
        if user is None or isinstance(user, UserInfo):
            return user
        return UserInfo.model_validate(user)

    # Persistence

    def _serialize(self) -> Dict[str, Optional[str]]:
        tokens = self._tokens
        if tokens is None:
            return {key: None for key in STORAGE_KEYS}
        return {
            ACCESS_TOKEN_KEY: tokens.access_token,
            REFRESH_TOKEN_KEY: tokens.refresh_token,
            ID_TOKEN_KEY: tokens.id_token,
            EXPIRES_AT_KEY: repr(tokens.expires_at) if tokens.expires_at is not None else None,
            AUTH_FLOW_KEY: tokens.flow,
            SESSION_DATA_KEY: self._session.model_dump_json(by_alias=True) if self._session else None,
            USER_DATA_KEY: self._user.model_dump_json() if self._user else None,
        }

    def _persist(self) -> None:
        """Write every key, then announce the changes to other contexts"""
        values = self._serialize()
        for key, value in values.items():
            if value is None:
                self.storage.remove(key)
            else:
                self.storage.set(key, value)
        logger.debug(f"Persisted session state to {self.storage.type} storage")

        if self.channel is not None:
            for key, value in values.items():
                self.channel.publish(self.context_id, StorageChange(key, value))

    def _load_from_storage(self) -> bool:
        """Replace in-memory state with what durable storage holds

        Returns:
            True if a session was loaded
        """
        access_token = self.storage.get(ACCESS_TOKEN_KEY)
        if not access_token:
            self._tokens = None
            self._session = None
            self._user = None
            return False

        expires_at = None
        raw_expires_at = self.storage.get(EXPIRES_AT_KEY)
        if raw_expires_at:
            try:
                expires_at = float(raw_expires_at)
            except ValueError:
                logger.warning(f"Ignoring unreadable {EXPIRES_AT_KEY}: {raw_expires_at!r}")
        if expires_at is None:
            expires_at = self._compute_expires_at(access_token, None)

        self._tokens = TokenSet(
            access_token=access_token,
            refresh_token=self.storage.get(REFRESH_TOKEN_KEY),
            id_token=self.storage.get(ID_TOKEN_KEY),
            expires_at=expires_at,
            flow=self.storage.get(AUTH_FLOW_KEY) or "password",
        )
        self._session = self._load_model(SESSION_DATA_KEY, SessionMetadata)
        self._user = self._load_model(USER_DATA_KEY, UserInfo)
        logger.debug(f"Loaded session from {self.storage.type} storage")
        return True

    def _load_model(self, key: str, model):
        raw = self.storage.get(key)
        if not raw:
            return None
        try:
            return model.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable {key}: {e}")
            return None

    def _on_storage_change(self, change: StorageChange) -> None:
        """Reload when another context changed the tokens of record"""
        if change.key not in SYNC_KEYS:
            return

        current = self.access_token if change.key == ACCESS_TOKEN_KEY else self.refresh_token
        if change.new_value == current:
            return

        logger.debug(f"{change.key} changed in another context, reloading")
        had_session = self._tokens is not None
        self.generation += 1
        if self._load_from_storage():
            self._notify("synced")
        elif had_session:
            logger.info("Session cleared in another context")
            self._notify("cleared", "synced")

    # Queries

    def is_authenticated(self) -> bool:
        """True only when an access token and a user are both present"""
        return bool(self.access_token) and self._user is not None

    def is_expired(self, now: Optional[float] = None) -> bool:
        """True when the access token's expiry of record has passed"""
        expires_at = self.expires_at
        if expires_at is None:
            return False
        return expires_at <= (self.clock() if now is None else now)

    def refresh_at(self, buffer: float = REFRESH_BUFFER_SECONDS) -> Optional[float]:
        """Epoch seconds at which a proactive refresh is due"""
        if self.expires_at is None:
            return None
        return self.expires_at - buffer

    def needs_refresh(self, buffer: float = REFRESH_BUFFER_SECONDS, now: Optional[float] = None) -> bool:
        """True when the access token expires within ``buffer`` seconds"""
        refresh_at = self.refresh_at(buffer)
        if refresh_at is None:
            return False
        return refresh_at <= (self.clock() if now is None else now)

    def get_expiration_info(self, now: Optional[float] = None) -> Optional[ExpirationInfo]:
        """Timing of the current access token

        Returns:
            ExpirationInfo, or None without an access token or when its
            claims cannot be parsed
        """
        if self._tokens is None:
            return None
        return jwt_utils.get_expiration_info(
            self._tokens.access_token,
            now=self.clock() if now is None else now,
            expires_at=self._tokens.expires_at,
        )

    def get_debug_info(self) -> Dict[str, Any]:
        """Snapshot of the session for troubleshooting (token values truncated)"""
        expiration = self.get_expiration_info()
        access_token = self.access_token
        return {
            "context_id": self.context_id,
            "generation": self.generation,
            "storage_type": self.storage.type,
            "is_authenticated": self.is_authenticated(),
            "flow": self.flow,
            "has_access_token": bool(access_token),
            "has_refresh_token": bool(self.refresh_token),
            "has_id_token": bool(self.id_token),
            "access_token_preview": _preview(access_token),
            "refresh_token_preview": _preview(self.refresh_token),
            "expires_at": self.expires_at,
            "expiration": expiration,
            "token_status": jwt_utils.get_token_status(access_token).status if access_token else None,
            "user": self._user.model_dump() if self._user else None,
            "session": self._session.model_dump(by_alias=True) if self._session else None,
        }
