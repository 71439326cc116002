"""
JWT helpers for token parsing.

Claims are read without signature verification; the SDK only needs them to
learn a token's lifetime, never to trust its contents.
"""

import logging
from typing import Optional, Dict, Any

from jose import jwt, JWTError

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600


def decode_payload(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode JWT claims without verification.

    Args:
        token: JWT token string

    Returns:
        Claims dictionary or None if the token is not a decodable JWT
    """
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError as e:
        logger.debug(f"Failed to decode JWT payload: {e}")
        return None

    if not isinstance(claims, dict):
        return None
    return claims


def calculate_expires_in(token: str, default: int = DEFAULT_EXPIRES_IN) -> int:
    """
    Lifetime of a JWT in seconds, taken from its ``exp`` and ``iat`` claims.

    Args:
        token: JWT token string
        default: Value used when the claims are missing or unusable

    Returns:
        Expiry duration in seconds
    """
    claims = decode_payload(token)
    if not claims:
        return default

    exp = claims.get('exp')
    iat = claims.get('iat')
    if isinstance(exp, (int, float)) and isinstance(iat, (int, float)) and exp > iat:
        return int(exp - iat)

    logger.debug("JWT has no usable exp/iat claims, using default lifetime")
    return default
