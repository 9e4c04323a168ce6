"""PKCE (Proof Key for Code Exchange, RFC 7636) engine

Generates code verifiers, derives S256/plain challenges, verifies
verifier/challenge pairs and keeps the pending authorization state for one
round-trip.
"""

import base64
import hashlib
import hmac
import json
import logging
import math
import re
import secrets
import time
from typing import Any, Dict, Optional

from .errors import InvalidParameter, PkceValidationError, UnsupportedMethod
from .models import PendingAuthorization, PKCEPair, ValidationResult
from .storage import KeyValueStorage, MemoryStorage


logger = logging.getLogger(__name__)

UNRESERVED_CHARSET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
SUPPORTED_METHODS = ("S256", "plain")
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128
RECOMMENDED_MIN_LENGTH = 64
DEFAULT_VERIFIER_LENGTH = 128

PKCE_STORAGE_KEY = "pkce_data"

_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]+$")


def generate_verifier(length: int = DEFAULT_VERIFIER_LENGTH) -> str:
    """Generate a cryptographically secure code verifier

    Each character is drawn uniformly from the unreserved URI set.

    Args:
        length: Number of characters (43-128)

    Returns:
        Code verifier string

    Raises:
        InvalidParameter: If length is outside 43-128
    """
    if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
        raise InvalidParameter(
            f"Code verifier length must be between {MIN_VERIFIER_LENGTH} and "
            f"{MAX_VERIFIER_LENGTH} characters, got {length}"
        )
    return "".join(secrets.choice(UNRESERVED_CHARSET) for _ in range(length))


def base64url_encode(data: bytes) -> str:
    """Base64url-encode without padding"""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def derive_challenge(verifier: str, method: str = "S256") -> str:
    """Derive the code challenge for a verifier

    Args:
        verifier: Code verifier
        method: ``S256`` (SHA-256 + base64url) or ``plain`` (identity)

    Returns:
        Code challenge string

    Raises:
        PkceValidationError: If the verifier is empty
        UnsupportedMethod: For any method other than S256 or plain
    """
    if method not in SUPPORTED_METHODS:
        raise UnsupportedMethod(
            f"Unsupported method: {method}. Use: {', '.join(SUPPORTED_METHODS)}"
        )
    if not verifier:
        raise PkceValidationError("Code verifier is required")

    if method == "S256":
        digest = hashlib.sha256(verifier.encode("utf-8")).digest()
        return base64url_encode(digest)
    return verifier


def verify_challenge(verifier: str, challenge: str, method: str = "S256") -> bool:
    """Check that ``challenge`` was derived from ``verifier``

    Comparison is constant-time. Empty inputs and unsupported methods
    yield False.
    """
    if not verifier or not challenge:
        return False
    try:
        expected = derive_challenge(verifier, method)
    except PkceValidationError as e:
        logger.debug(f"PKCE verification rejected: {e}")
        return False
    return hmac.compare_digest(expected.encode("utf-8"), challenge.encode("utf-8"))


def validate_verifier(verifier: Optional[str]) -> ValidationResult:
    """Validate code verifier length and character set"""
    errors = []
    warnings = []

    if not verifier:
        return ValidationResult(valid=False, errors=["Code verifier is required"])

    length = len(verifier)
    if length < MIN_VERIFIER_LENGTH:
        errors.append(f"Code verifier too short: {length} < {MIN_VERIFIER_LENGTH} characters")
    elif length > MAX_VERIFIER_LENGTH:
        errors.append(f"Code verifier too long: {length} > {MAX_VERIFIER_LENGTH} characters")
    elif length < RECOMMENDED_MIN_LENGTH:
        warnings.append(f"Code verifier is shorter than recommended ({RECOMMENDED_MIN_LENGTH}+ characters)")

    if not _VERIFIER_RE.match(verifier):
        errors.append("Code verifier contains invalid characters")
        errors.append("Only alphanumeric, hyphen, period, underscore, and tilde are allowed")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def calculate_entropy(verifier: str) -> float:
    """Approximate entropy of a verifier in bits"""
    return len(verifier) * math.log2(len(UNRESERVED_CHARSET))


def generate_pkce_pair(length: int = DEFAULT_VERIFIER_LENGTH, method: str = "S256") -> PKCEPair:
    """Generate a verifier and its challenge

    Raises:
        InvalidParameter: If length is outside 43-128
        UnsupportedMethod: For an unknown challenge method
    """
    verifier = generate_verifier(length)
    validation = validate_verifier(verifier)
    if not validation.valid:
        raise PkceValidationError(f"Invalid code verifier: {', '.join(validation.errors)}")

    return PKCEPair(
        code_verifier=verifier,
        code_challenge=derive_challenge(verifier, method),
        method=method,
        entropy=calculate_entropy(verifier),
        validation=validation,
    )


def generate_state() -> str:
    """Opaque value for CSRF protection; returned in the callback"""
    return secrets.token_urlsafe(32)


def generate_nonce() -> str:
    """Random value binding the ID token to this authorization request"""
    return secrets.token_urlsafe(32)


def security_recommendations() -> Dict[str, Any]:
    """PKCE usage recommendations"""
    return {
        "recommended_length": DEFAULT_VERIFIER_LENGTH,
        "minimum_length": RECOMMENDED_MIN_LENGTH,
        "preferred_method": "S256",
        "avoid_methods": ["plain"],
        "character_set": "A-Z, a-z, 0-9, -, ., _, ~",
        "storage": "Short-lived storage (one-time use)",
        "generation": "Cryptographically secure random (secrets module)",
        "validation": "Server-side challenge verification required",
        "expiry": "Typically 10-15 minutes for authorization flow",
    }


class PKCEManager:
    """Keeps the pending authorization for one round-trip

    The entry survives a process restart when backed by file storage and is
    removed as soon as it is consumed, abandoned or found stale.
    """

    def __init__(self, storage: Optional[KeyValueStorage] = None, max_age: float = 600, clock=time.time):
        """Initialize PKCE manager

        Args:
            storage: Short-lived storage (default: in-memory)
            max_age: Seconds after which a pending entry is discarded
            clock: Time source returning epoch seconds
        """
        self.storage = storage or MemoryStorage()
        self.max_age = max_age
        self._clock = clock

    def save(self, pair: PKCEPair, state: str, nonce: Optional[str] = None) -> PendingAuthorization:
        """Persist a new pending authorization, replacing any previous one"""
        pending = PendingAuthorization(
            code_verifier=pair.code_verifier,
            code_challenge=pair.code_challenge,
            method=pair.method,
            state=state,
            nonce=nonce,
            created_at=self._clock(),
        )
        self.storage.set(PKCE_STORAGE_KEY, json.dumps(pending.to_dict()))
        logger.debug("Saved PKCE data for pending authorization")
        return pending

    def load(self) -> Optional[PendingAuthorization]:
        """Load the pending authorization without consuming it

        Returns:
            Pending authorization, or None if absent, incomplete or stale
        """
        raw = self.storage.get(PKCE_STORAGE_KEY)
        if not raw:
            return None

        try:
            pending = PendingAuthorization.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable PKCE data: {e}")
            self.clear()
            return None

        if not (pending.code_verifier and pending.code_challenge and pending.state):
            logger.info("PKCE data incomplete, discarding")
            self.clear()
            return None

        if self.max_age and self._clock() - pending.created_at > self.max_age:
            logger.info("PKCE data expired, discarding")
            self.clear()
            return None

        return pending

    def consume(self) -> Optional[PendingAuthorization]:
        """Load and remove the pending authorization in one step"""
        pending = self.load()
        if pending is not None:
            self.clear()
        return pending

    def clear(self) -> None:
        """Remove the pending authorization"""
        self.storage.remove(PKCE_STORAGE_KEY)
