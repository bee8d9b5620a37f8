from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader
from jose import jwt, JWTError

from .config import settings

api_key_header = APIKeyHeader(name="Authorization")


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: Optional[str]


async def get_key_by_user_id_or_ip(request: Request) -> str:
    """
    Tries to get the user ID from the JWT token.
    If it fails (no token, invalid token), it falls back to the client's IP.
    """
    try:
        token = request.headers.get("Authorization")
        scheme, jwt_token = token.split()
        if scheme.lower() != "bearer":
            return request.client.host  # Fallback to IP

        payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = payload.get("sub")

        if user_id:
            return str(user_id)
    except (JWTError, ValueError, AttributeError, TypeError):
        # If token is invalid, missing, or malformed, limit by IP
        pass
    return request.client.host


async def get_current_user(
        token: Annotated[str, Depends(api_key_header)]
) -> CurrentUser:
    """
    Decodes the JWT from the 'Authorization: Bearer ...' header.
    The identity service puts the user id in 'sub' and the role in 'role'.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        scheme, jwt_token = token.split()
        if scheme.lower() != "bearer":
            raise credentials_exception
        payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = payload.get("sub")
        if not user_id:
            raise credentials_exception
        return CurrentUser(id=str(user_id), role=payload.get("role"))
    except (JWTError, ValueError, AttributeError):
        raise credentials_exception
