import logging
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from jose import jwt as jose_jwt

from .config import IDENTITY_JWT_ALGORITHM, IDENTITY_JWT_AUDIENCE, IDENTITY_JWT_SECRET
from .errors import AuthenticationRequired

logger = logging.getLogger(__name__)

# Credentials are optional at the transport level; each dependency decides if they are required
security = HTTPBearer(auto_error=False)


def decode_identity_token(token: str) -> str:
    """
    Verify a token issued by the identity provider and return its subject.

    Only the opaque ``sub`` claim is used; profiles live elsewhere.
    """
    if not IDENTITY_JWT_SECRET:
        logger.error("❌ IDENTITY_JWT_SECRET not configured")
        raise AuthenticationRequired("Identity verification is not configured")

    try:
        payload = jose_jwt.decode(
            token,
            IDENTITY_JWT_SECRET,
            algorithms=[IDENTITY_JWT_ALGORITHM],
            audience=IDENTITY_JWT_AUDIENCE,
            options={"verify_aud": bool(IDENTITY_JWT_AUDIENCE)},
        )
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        raise AuthenticationRequired("Invalid or expired token") from e

    subject = payload.get("sub")
    if not subject:
        raise AuthenticationRequired("Token has no subject")
    return str(subject)


async def get_optional_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    """Authenticated user id, or None for anonymous callers. A bad token is still an error."""
    if credentials is None:
        return None
    return decode_identity_token(credentials.credentials)


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    if credentials is None:
        raise AuthenticationRequired()
    return decode_identity_token(credentials.credentials)
