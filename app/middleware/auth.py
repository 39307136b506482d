from typing import Optional

from fastapi import Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.core.config import get_settings
from app.core.errors import Unauthorized

bearer_scheme = HTTPBearer(auto_error=False)


class CurrentUser:
    """Authenticated caller, as carried by the session token."""
    def __init__(self, id: str, email: Optional[str] = None):
        self.id = id
        self.email = email

    def __repr__(self) -> str:
        return f"CurrentUser(id={self.id!r})"


def create_access_token(user_id: str, email: Optional[str] = None, **claims) -> str:
    """Sign a session token for ``user_id``. Used by the auth host and by tests."""
    settings = get_settings()
    payload = {"sub": user_id, **claims}
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


async def get_current_user(
    bearer: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> CurrentUser:
    settings = get_settings()

    if not bearer or not bearer.credentials:
        raise Unauthorized("Authentication required")

    try:
        payload = jwt.decode(
            bearer.credentials,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_aud": False},
        )
        user_id = str(payload["sub"])
    except (JWTError, KeyError):
        raise Unauthorized("Invalid or expired token")

    if not user_id:
        raise Unauthorized("Invalid or expired token")
    return CurrentUser(id=user_id, email=payload.get("email"))
