from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import ValidationError

from .config import settings
from .exceptions import NotAuthenticatedError
from ..schemas.user import CurrentUser

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login")


def create_access_token(user_id: str, role: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode = {"sub": user_id, "role": role, "exp": expire}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def verify_token(token: str) -> CurrentUser:
    """Decode a bearer token into the caller; raises NotAuthenticatedError"""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError as e:
        raise NotAuthenticatedError(f"Could not validate credentials: {e}")

    user_id = payload.get("sub")
    role = payload.get("role")
    if user_id is None or role is None:
        raise NotAuthenticatedError("Token is missing subject or role")
    try:
        return CurrentUser(id=user_id, role=role)
    except ValidationError as e:
        raise NotAuthenticatedError(f"Unknown role in token: {role}") from e
