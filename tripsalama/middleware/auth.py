from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from tripsalama.config import get_settings
from tripsalama.schemas.schemas import RoleEnum

settings = get_settings()
bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(user_id: int, role: str, expires_minutes: int | None = None) -> str:
    """Sign a JWT carrying the user id (``sub``) and role."""
    expires = datetime.now(timezone.utc) + timedelta(
        minutes=expires_minutes or settings.access_token_expire_minutes
    )
    data = {"sub": str(user_id), "role": RoleEnum(role).value, "exp": expires}
    return jwt.encode(data, settings.secret_key, algorithm=settings.jwt_algorithm)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict:
    """Decode and validate the JWT Bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not str(payload.get("sub", "")).isdigit():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return payload


async def get_current_user_id(token_data: dict = Depends(get_current_user)) -> int:
    return int(token_data["sub"])


def _require_role(token_data: dict, role: RoleEnum) -> int:
    if token_data.get("role") != role.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"{role.value.capitalize()} access required")
    return int(token_data["sub"])


async def get_current_passenger(token_data: dict = Depends(get_current_user)) -> int:
    """Extract passenger id from token payload."""
    return _require_role(token_data, RoleEnum.passenger)


async def get_current_driver(token_data: dict = Depends(get_current_user)) -> int:
    """Extract driver id from token payload."""
    return _require_role(token_data, RoleEnum.driver)


async def get_current_admin(token_data: dict = Depends(get_current_user)) -> int:
    return _require_role(token_data, RoleEnum.admin)
