"""
Authentication module for Facility Monitor.

Handles JWT validation and extraction of the caller's id and role.
"""
from typing import NamedTuple, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError

from facility_monitor.config import JWT_PUBLIC_KEY_PATH

DEFAULT_ROLE = "user"


def get_jwt_public_key() -> str:
    with open(JWT_PUBLIC_KEY_PATH, "r") as f:
        return f.read().replace('\r\n', '\n').replace('\r', '\n')


security = HTTPBearer()


class AuthError(Exception):
    """Custom exception for authentication errors."""
    def __init__(self, message: str, status_code: int = 401):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class CurrentUser(NamedTuple):
    user_id: Optional[int]
    role: str


def decode_token(token: str) -> CurrentUser:
    """
    Decode an RS256 token into the caller's identity.

    Raises:
        JWTError: If the signature or claims are invalid
        AuthError: If the token has no subject
    """
    payload = jwt.decode(
        token,
        get_jwt_public_key(),
        algorithms=["RS256"],
        options={"verify_aud": False}
    )
    subject = payload.get("sub", payload.get("user_id"))
    if subject is None:
        raise AuthError("Token missing sub claim")
    try:
        user_id = int(subject)
    except (TypeError, ValueError):
        raise AuthError("Token sub claim must be a user id")
    role = str(payload.get("role") or DEFAULT_ROLE).lower()
    return CurrentUser(user_id=user_id, role=role)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> CurrentUser:
    """
    Extract the caller from the bearer token.

    Args:
        credentials: JWT credentials from Authorization header

    Returns:
        CurrentUser with user id and role (defaults to "user")

    Raises:
        HTTPException: If token is invalid or missing claims
    """
    try:
        return decode_token(credentials.credentials)
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except AuthError as e:
        raise HTTPException(
            status_code=e.status_code,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
