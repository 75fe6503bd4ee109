"""
Authentication and authorization utilities for the Orders service.

Validates JWT tokens issued by the Users service.
"""
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from . import config

logger = logging.getLogger(__name__)

# Security schemes for JWT bearer tokens; the optional one lets guests check out
security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    """Current authenticated user information."""
    id: int
    email: str
    role: str
    token: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def decode_token(token: str) -> CurrentUser:
    """
    Decode a bearer token into the user it was issued for.

    Raises:
        HTTPException: 401 if the token is invalid or lacks a required claim
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        user_id_str: str = payload.get("sub")
        email: str = payload.get("email")
        role: str = payload.get("role")

        if user_id_str is None or email is None or role is None:
            raise credentials_exception

        return CurrentUser(id=int(user_id_str), email=email, role=role, token=token)
    except (JWTError, ValueError) as e:
        logger.error(f"JWT validation error: {e}")
        raise credentials_exception


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> CurrentUser:
    """
    FastAPI dependency to get the current authenticated user from JWT token.

    Args:
        credentials: HTTP Authorization credentials (injected)

    Returns:
        Current authenticated user information

    Raises:
        HTTPException: 401 if token is invalid
    """
    return decode_token(credentials.credentials)


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security)
) -> Optional[CurrentUser]:
    """Like ``get_current_user`` but returns None when no token is sent (guest checkout)."""
    if credentials is None:
        return None
    return decode_token(credentials.credentials)


def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    FastAPI dependency to require admin role.

    Args:
        current_user: Current authenticated user (injected)

    Returns:
        Current user if they are an admin

    Raises:
        HTTPException: 403 if user is not an admin
    """
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return current_user
