"""
JWT utilities for actor tokens.

Actors (back-office staff, couriers, scheduled jobs and customers) reach the
API with a bearer token issued by the identity service. This module decodes
and validates those tokens and can mint them for internal callers such as
the scheduler and the test suite. Identity linking itself lives elsewhere.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError

from pharmadelivery.core.config import get_settings
from pharmadelivery.core.logging import get_logger

settings = get_settings()
logger = get_logger(__name__)


class SecurityError(Exception):
    """Base exception for security-related errors."""

    def __init__(self, message: str, code: str, **context):
        super().__init__(message)
        self.code = code
        self.context = context


class TokenError(SecurityError):
    """Exception raised for token-related errors."""

    pass


def create_access_token(
    subject: str,
    role: str,
    expires_delta: Optional[timedelta] = None,
    **claims: Any,
) -> str:
    """
    Create a signed access token for an actor.

    Args:
        subject: Actor identifier stored in the ``sub`` claim
        role: Actor role (admin, manager, courier, system, customer)
        expires_delta: Optional custom lifetime
        **claims: Extra claims such as ``deliveryman_id`` or ``pharmacy_unit_id``

    Returns:
        Encoded JWT token string

    Raises:
        TokenError: If token creation fails

    Example:
        >>> token = create_access_token("staff-42", "manager", pharmacy_unit_id="unit-1")
    """
    now = datetime.now(timezone.utc)
    expire = now + (
        expires_delta
        or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    )

    to_encode = {key: value for key, value in claims.items() if value is not None}
    to_encode.update(
        {
            "sub": subject,
            "role": role,
            "exp": expire,
            "iat": now,
            "type": "access",
        }
    )

    try:
        encoded_jwt = jwt.encode(
            to_encode,
            settings.secret_key,
            algorithm=settings.jwt_algorithm,
        )
    except JWTError as e:
        logger.error(
            "Failed to create access token",
            error=str(e),
            error_type=type(e).__name__,
            subject=subject,
        )
        raise TokenError(
            "Failed to create access token",
            code="TOKEN_CREATE_FAILED",
            original_error=str(e),
        ) from e

    logger.debug(
        "Access token created",
        subject=subject,
        role=role,
        expires_at=expire.isoformat(),
    )

    return encoded_jwt


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT token.

    Args:
        token: JWT token string to decode

    Returns:
        Dictionary of decoded token claims

    Raises:
        TokenError: If token is empty, invalid, expired, or malformed
    """
    if not token:
        logger.warning("Attempted to decode empty token")
        raise TokenError("Token cannot be empty", code="EMPTY_TOKEN")

    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )

    except ExpiredSignatureError as e:
        logger.warning("Token has expired", error=str(e))
        raise TokenError("Token has expired", code="TOKEN_EXPIRED") from e

    except JWTError as e:
        logger.warning(
            "Invalid token",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise TokenError(
            "Invalid token",
            code="TOKEN_INVALID",
            original_error=str(e),
        ) from e

    if payload.get("type") != "access":
        logger.warning("Token type mismatch", token_type=payload.get("type"))
        raise TokenError("Invalid token type", code="TOKEN_TYPE_INVALID")

    if not payload.get("sub") or not payload.get("role"):
        logger.warning("Token missing required claims", claims=list(payload.keys()))
        raise TokenError("Token missing required claims", code="TOKEN_CLAIMS_MISSING")

    logger.debug(
        "Token decoded successfully",
        subject=payload.get("sub"),
        role=payload.get("role"),
    )

    return payload
