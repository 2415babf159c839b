"""Authentication utilities."""
from dataclasses import dataclass
from typing import Optional
from fastapi import Depends, Header, HTTPException
import logging

from config import API_TOKENS, PRIVILEGED_ROLES
from monitoring import auth_failures_counter, auth_attempts_counter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller."""
    user_id: int
    role: str

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES

    def can_access(self, owner_id: int) -> bool:
        """Owners see their own resources, privileged roles see everything."""
        return self.is_privileged or self.user_id == owner_id


def verify_token(authorization: Optional[str] = Header(None)) -> str:
    """
    Verify authentication token.

    Args:
        authorization: Authorization header value

    Returns:
        Valid token

    Raises:
        HTTPException: If token is invalid or missing
    """
    # Record authentication attempt
    auth_attempts_counter.add(1, {"type": "bearer_token"})

    if authorization is None:
        auth_failures_counter.add(1, {"reason": "missing_header"})
        logger.warning("Authentication failed: Missing authorization header")
        raise HTTPException(status_code=401, detail="Missing authorization header")

    # Extract token (Bearer <token>)
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        auth_failures_counter.add(1, {"reason": "invalid_format"})
        logger.warning("Authentication failed: Invalid authorization header format", extra={
            "auth_header": authorization[:20] + "..." if len(authorization) > 20 else authorization
        })
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = parts[1]
    if token not in API_TOKENS:
        auth_failures_counter.add(1, {"reason": "invalid_token"})
        logger.warning("Authentication failed: Invalid token", extra={
            "token_prefix": token[:8] + "..." if len(token) > 8 else token
        })
        raise HTTPException(status_code=401, detail="Invalid token")

    return token


def get_principal_from_token(token: str) -> Principal:
    """
    Resolve the principal a token was issued to.

    Args:
        token: Authentication token

    Returns:
        Principal with user id and role
    """
    entry = API_TOKENS[token]
    return Principal(user_id=int(entry["user_id"]), role=str(entry.get("role", "user")))


def get_current_principal(token: str = Depends(verify_token)) -> Principal:
    """Dependency returning the authenticated caller."""
    principal = get_principal_from_token(token)
    logger.debug("Authentication successful", extra={
        "user_id": principal.user_id,
        "role": principal.role
    })
    return principal
