"""Authentication and user role endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session

from watermeter.api.deps import get_current_user, require_admin
from watermeter.database import get_session
from watermeter.models.user import User
from watermeter.schemas.auth import (
    LoginRequest,
    LoginResponse,
    RegisterRequest,
    RoleUpdateRequest,
    UserResponse,
)
from watermeter.schemas.common import ApiResponse
from watermeter.services import access
from watermeter.services.auth_service import login, register_user, set_role

router = APIRouter(tags=["auth"])


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        is_active=user.is_active,
    )


@router.post("/auth/register", response_model=ApiResponse[UserResponse], status_code=201)
def register(request: RegisterRequest, session: Session = Depends(get_session)):
    """Create an account. The first account on a fresh server is an admin."""
    try:
        user = register_user(request.email, request.password, request.name, session)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return ApiResponse(message="User registered successfully", data=_user_to_response(user))


@router.post("/auth/login", response_model=ApiResponse[LoginResponse])
def login_user(request: LoginRequest, session: Session = Depends(get_session)):
    try:
        user, token = login(request.email, request.password, session)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    return ApiResponse(
        message="Login successful",
        data=LoginResponse(access_token=token, user=_user_to_response(user)),
    )


@router.get("/auth/me", response_model=ApiResponse[UserResponse])
def me(user: User = Depends(get_current_user)):
    return ApiResponse(message="User retrieved successfully", data=_user_to_response(user))


@router.patch("/users/{user_id}/role", response_model=ApiResponse[UserResponse])
def update_role(
    user_id: str,
    request: RoleUpdateRequest,
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
):
    """Change a user's role. Only a super admin can grant super admin."""
    if request.role == access.SUPER_ADMIN and admin.role != access.SUPER_ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
    try:
        user = set_role(user_id, request.role, session)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return ApiResponse(message="Role updated successfully", data=_user_to_response(user))
