from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import ValidationError

from libs.auth.models import AuthUser
from libs.common.config import get_settings

settings = get_settings()
security = HTTPBearer()

STAFF_ROLES = frozenset({"owner", "manager", "admin", "staff"})


class InvalidTokenError(Exception):
    """Raised when a bearer token cannot be verified."""


def decode_token(token: str) -> AuthUser:
    """
    Verify a Supabase HS256 JWT and return the user it describes.

    Shared by the HTTP dependency and the websocket handshake.
    """
    try:
        payload = jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
        return AuthUser(**payload)
    except (JWTError, ValidationError) as exc:
        raise InvalidTokenError(str(exc)) from exc


async def get_current_user(
    request: Request,
    token: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> AuthUser:
    """
    Validate the bearer token and return the authenticated user.
    """
    try:
        user = decode_token(token.credentials)
    except InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    # Lets the rate limiter key on the user instead of the IP.
    request.state.user = user
    return user


async def require_staff(
    current_user: Annotated[AuthUser, Depends(get_current_user)]
) -> AuthUser:
    """
    Ensure the user belongs to an organization with a staff role.
    """
    if current_user.org_id is None or current_user.org_role not in STAFF_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Staff privileges required",
        )
    return current_user
