"""
Access control for the admin pipeline endpoints.

Identity is issued elsewhere; this service only decodes the bearer token,
reads the caller's id and role, and answers "is this caller an admin".
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from .config import settings

ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 hours
ADMIN_ROLE = "admin"

security = HTTPBearer()


@dataclass(frozen=True)
class Caller:
    id: str
    role: str = "user"
    email: Optional[str] = None


def is_authorized_admin(caller: Optional[Caller]) -> bool:
    return caller is not None and caller.role == ADMIN_ROLE


def create_access_token(subject: str, role: str = "user", expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token (used by scripts and tests)."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {"sub": subject, "role": role, "exp": expire}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def get_current_caller(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Caller:
    """Decode the bearer token into a Caller."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(credentials.credentials, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise credentials_exception

    subject = payload.get("sub")
    if not subject:
        raise credentials_exception
    return Caller(id=str(subject), role=payload.get("role", "user"), email=payload.get("email"))


def require_admin(caller: Caller = Depends(get_current_caller)) -> Caller:
    """Dependency that ensures the current caller has the admin role."""
    if not is_authorized_admin(caller):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unauthorized. Admin access required."
        )
    return caller
