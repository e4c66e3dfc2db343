"""Common API dependencies: caller resolution, capability checks, the gateway."""

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from watermeter.config import settings
from watermeter.database import get_session
from watermeter.models.user import User
from watermeter.services import access
from watermeter.services.auth_service import resolve_api_key
from watermeter.services.gateway import DeviceGateway, default_gateway
from watermeter.utils.security import decode_token

bearer_scheme = HTTPBearer()


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    session: Session = Depends(get_session),
) -> User:
    """Extract and validate user from JWT access token."""
    try:
        payload = decode_token(credentials.credentials)
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
        )

    user = session.get(User, payload["sub"])
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )
    return user


def require_capability(capability: str):
    """Dependency factory: the current user must hold ``capability``."""

    def checker(user: User = Depends(get_current_user)) -> User:
        if capability not in access.resolve_capabilities(user.role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You do not have permission to perform this action",
            )
        return user

    return checker


def require_admin(user: User = Depends(get_current_user)) -> User:
    """Require the current user to be an admin (either tier)."""
    if not access.is_admin(user.role):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


def get_api_key_user(
    x_api_key: str | None = Header(default=None),
    session: Session = Depends(get_session),
) -> User | None:
    """Gate for device-facing endpoints: a valid X-API-Key, unless keys are disabled."""
    if not settings.device_api_key_required:
        return None
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key is required",
        )
    try:
        return resolve_api_key(x_api_key, session)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
        )


def get_gateway() -> DeviceGateway:
    """FastAPI dependency: the process-wide device gateway."""
    return default_gateway()
