"""JWT claim parsing and validation

IMPORTANT: nothing in this module verifies token signatures. These helpers
decode the payload for client-side introspection only (expiry display,
refresh scheduling, debugging). They are not a security control; the backend
is responsible for all real token verification.
"""

import base64
import datetime
import json
import logging
import math
import time
from typing import Any, Dict, Iterable, List, Optional

from .errors import ExpiredToken, InvalidToken
from .models import ExpirationInfo, ScopeCheck, TokenStatus, ValidationResult


logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ("iss", "sub", "aud", "iat", "exp")
KNOWN_ROLES = ("admin", "customer")
DEFAULT_WARNING_THRESHOLD = 300


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _decode_segment(token: Any, index: int) -> Optional[Dict[str, Any]]:
    if not token or not isinstance(token, str):
        return None

    parts = token.split(".")
    if len(parts) != 3:
        logger.debug(f"Invalid JWT format: expected 3 parts, got {len(parts)}")
        return None

    try:
        data = json.loads(_b64url_decode(parts[index]).decode("utf-8"), parse_constant=_reject_constant)
    except ValueError as e:
        logger.debug(f"Failed to decode JWT segment {index}: {e}")
        return None

    return data if isinstance(data, dict) else None


def decode_jwt(token: Any) -> Optional[Dict[str, Any]]:
    """Decode the JWT payload without verifying the signature

    Args:
        token: JWT string (header.payload.signature)

    Returns:
        Claims dictionary, or None if the token is malformed. None means
        "cannot introspect", not "invalid" or "expired".
    """
    return _decode_segment(token, 1)


def decode_jwt_header(token: Any) -> Optional[Dict[str, Any]]:
    """Decode the JWT header (``alg``, ``typ``, ``kid``) without verification"""
    return _decode_segment(token, 0)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-standard JSON constant {name}")


def _is_number(value: Any) -> bool:
    # finite only: exp=1e999 decodes to inf
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


def _now(now: Optional[float]) -> float:
    return time.time() if now is None else now


def _iso(epoch: float) -> Optional[str]:
    try:
        return datetime.datetime.fromtimestamp(epoch, datetime.timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def format_duration(seconds: float) -> str:
    """Format a duration as e.g. ``1d 2h 5m`` (``expired`` when negative)"""
    if seconds < 0:
        return "expired"

    seconds = int(seconds)
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, remaining_seconds = divmod(rest, 60)

    parts = []
    if days > 0:
        parts.append(f"{days}d")
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if remaining_seconds > 0 and not parts:
        parts.append(f"{remaining_seconds}s")

    return " ".join(parts) or "0s"


def validate_jwt(
    token: Any,
    now: Optional[float] = None,
    warning_threshold: int = DEFAULT_WARNING_THRESHOLD,
) -> ValidationResult:
    """Validate token structure and claims (no signature verification)

    Missing required claims (iss, sub, aud, iat, exp), ``exp <= now`` and
    ``nbf > now`` are errors. Expiry within ``warning_threshold`` seconds,
    an unknown role, non-list scopes and a missing sessionId or jti are
    warnings only.

    Args:
        token: JWT string
        now: Current epoch seconds (default: time.time())
        warning_threshold: Seconds before expiry that trigger a warning

    Returns:
        ValidationResult with the decoded claims when parsable
    """
    if not token:
        return ValidationResult(valid=False, errors=["Token is missing"])
    if not isinstance(token, str):
        return ValidationResult(valid=False, errors=["Token must be a string"])
    if len(token.split(".")) != 3:
        return ValidationResult(valid=False, errors=["Token must have 3 parts (header.payload.signature)"])

    claims = decode_jwt(token)
    if claims is None:
        return ValidationResult(valid=False, errors=["Failed to parse token payload"])

    current = _now(now)
    errors: List[str] = []
    warnings: List[str] = []

    missing = [claim for claim in REQUIRED_CLAIMS if _is_missing(claims.get(claim))]
    if missing:
        errors.append(f"Missing required claims: {', '.join(missing)}")

    exp = claims.get("exp")
    if _is_number(exp):
        if exp <= current:
            errors.append("Token has expired")
        elif exp <= current + warning_threshold:
            warnings.append(f"Token expires soon (less than {format_duration(warning_threshold)})")
    elif not _is_missing(exp):
        errors.append("Token exp claim must be a number")

    nbf = claims.get("nbf")
    if _is_number(nbf) and nbf > current:
        errors.append("Token is not yet valid (nbf claim in future)")

    role = claims.get("role")
    if role and role not in KNOWN_ROLES:
        warnings.append(f"Unknown role: {role}")

    if "scopes" in claims and not isinstance(claims["scopes"], list):
        warnings.append("Scopes claim should be an array")

    if not claims.get("sessionId"):
        warnings.append("Token missing sessionId claim")

    if not claims.get("jti"):
        warnings.append("Token missing jti (JWT ID) claim")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings, claims=claims)


def get_token_status(
    token: Any,
    now: Optional[float] = None,
    warning_threshold: int = DEFAULT_WARNING_THRESHOLD,
) -> TokenStatus:
    """Classify a token as valid, expiring_soon, expired or invalid

    A token with missing required claims is ``invalid``, the same policy
    :func:`validate_jwt` applies.
    """
    current = _now(now)
    validation = validate_jwt(token, now=current, warning_threshold=warning_threshold)
    claims = validation.claims

    if claims is None or any(_is_missing(claims.get(c)) for c in REQUIRED_CLAIMS) \
            or not _is_number(claims.get("exp")) or not _is_number(claims.get("iat")):
        return TokenStatus(
            status="invalid",
            message="Token is invalid or malformed",
            validation=validation,
            claims=claims,
        )

    time_until_expiry = int(claims["exp"] - current)
    time_since_issued = int(current - claims["iat"])

    if time_until_expiry <= 0:
        status, message = "expired", "Token has expired"
    elif time_until_expiry <= warning_threshold:
        status, message = "expiring_soon", "Token expires soon"
    else:
        status, message = "valid", "Token is valid"

    return TokenStatus(
        status=status,
        message=message,
        validation=validation,
        claims=claims,
        timing={
            "now": _iso(current),
            "issued_at": _iso(claims["iat"]),
            "expires_at": _iso(claims["exp"]),
            "time_until_expiry": time_until_expiry,
            "time_since_issued": time_since_issued,
            "expires_in": format_duration(time_until_expiry),
            "age": format_duration(time_since_issued),
        },
    )


def get_expiration_info(
    token: Any,
    now: Optional[float] = None,
    expires_at: Optional[float] = None,
) -> Optional[ExpirationInfo]:
    """Timing information for an access token

    Args:
        token: Access token
        now: Current epoch seconds
        expires_at: Expiry of record; overrides the ``exp`` claim when given

    Returns:
        ExpirationInfo, or None if the token's claims cannot be parsed or
        no expiry is known
    """
    claims = decode_jwt(token)
    if claims is None:
        return None

    exp = expires_at if expires_at is not None else claims.get("exp")
    if not _is_number(exp):
        return None

    current = _now(now)
    iat = claims.get("iat")
    time_until_expiry = int(exp - current)
    time_since_issued = int(current - iat) if _is_number(iat) else None

    try:
        expires_dt = datetime.datetime.fromtimestamp(float(exp), datetime.timezone.utc)
        issued_dt = (
            datetime.datetime.fromtimestamp(float(iat), datetime.timezone.utc)
            if _is_number(iat) else None
        )
    except (OverflowError, OSError, ValueError):
        return None

    return ExpirationInfo(
        expires_at=expires_dt,
        issued_at=issued_dt,
        time_until_expiry=time_until_expiry,
        time_since_issued=time_since_issued,
        is_expired=time_until_expiry <= 0,
        expires_in=format_duration(time_until_expiry),
        age=format_duration(time_since_issued) if time_since_issued is not None else None,
    )


def extract_claims(token: Any, names: Iterable[str]) -> Optional[Dict[str, Any]]:
    """Pick the named claims that are present in the token"""
    claims = decode_jwt(token)
    if claims is None:
        return None
    return {name: claims[name] for name in names if name in claims}


def check_scopes(token: Any, required_scopes: Iterable[str]) -> ScopeCheck:
    """Check that the token's ``scopes`` claim contains every required scope"""
    required = list(required_scopes)
    claims = decode_jwt(token)

    if claims is None:
        return ScopeCheck(valid=False, required_scopes=required, reason="Invalid token")

    user_scopes = claims.get("scopes")
    if not isinstance(user_scopes, list):
        return ScopeCheck(valid=False, required_scopes=required, reason="No scopes defined in token")

    missing = [scope for scope in required if scope not in user_scopes]
    return ScopeCheck(
        valid=not missing,
        user_scopes=user_scopes,
        required_scopes=required,
        missing_scopes=missing,
        reason=f"Missing scopes: {', '.join(missing)}" if missing else None,
    )


def validate_for_purpose(
    token: Any,
    role: Optional[str] = None,
    scopes: Optional[Iterable[str]] = None,
    client_id: Optional[str] = None,
    min_remaining: Optional[int] = None,
    now: Optional[float] = None,
) -> ValidationResult:
    """Validate a token and additionally require a role, scopes, client or
    remaining lifetime (no signature verification)"""
    current = _now(now)
    validation = validate_jwt(token, now=current)
    claims = validation.claims or {}
    errors = list(validation.errors)

    if role and claims.get("role") != role:
        errors.append(f"Required role: {role}, actual: {claims.get('role')}")

    if scopes is not None:
        scope_check = check_scopes(token, scopes)
        if not scope_check.valid:
            errors.append(scope_check.reason)

    if client_id and claims.get("clientId") != client_id:
        errors.append(f"Required client: {client_id}, actual: {claims.get('clientId')}")

    if min_remaining:
        exp = claims.get("exp")
        remaining = exp - current if _is_number(exp) else 0
        if remaining < min_remaining:
            errors.append(f"Token expires too soon ({format_duration(remaining)} remaining)")

    return ValidationResult(
        valid=not errors,
        errors=errors,
        warnings=list(validation.warnings),
        claims=validation.claims,
    )


def debug_token(token: Any, now: Optional[float] = None) -> Dict[str, Any]:
    """Collect everything known about a token for debugging output"""
    if not token:
        return {"error": "No token provided"}

    current = _now(now)
    validation = validate_jwt(token, now=current)
    claims = validation.claims or {}
    header = decode_jwt_header(token) or {}
    exp = claims.get("exp")

    return {
        "token": {
            "preview": str(token)[:20] + "...",
            "length": len(str(token)),
            "parts": len(str(token).split(".")),
        },
        "header": header or None,
        "payload": validation.claims,
        "validation": validation,
        "security": {
            "algorithm": header.get("alg"),
            "issuer": claims.get("iss"),
            "audience": claims.get("aud"),
            "subject": claims.get("sub"),
            "token_type": claims.get("tokenType"),
            "has_jti": bool(claims.get("jti")),
            "has_session": bool(claims.get("sessionId")),
        },
        "timing": {
            "issued": _iso(claims["iat"]) if _is_number(claims.get("iat")) else None,
            "expires": _iso(exp) if _is_number(exp) else None,
            "now": _iso(current),
            "expires_in": format_duration(exp - current) if _is_number(exp) else None,
        },
    }


def require_claims(token: Any, now: Optional[float] = None) -> Dict[str, Any]:
    """Decode a token that must be usable right now (no signature verification)

    Raises:
        InvalidToken: If the token cannot be decoded
        ExpiredToken: If its ``exp`` claim has passed
    """
    claims = decode_jwt(token)
    if claims is None:
        raise InvalidToken("Token is malformed or its payload cannot be parsed")

    exp = claims.get("exp")
    if _is_number(exp) and exp <= _now(now):
        raise ExpiredToken(f"Token expired {format_duration(_now(now) - exp)} ago")
    return claims
