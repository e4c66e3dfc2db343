"""API key management endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session

from watermeter.api.deps import get_current_user
from watermeter.database import get_session
from watermeter.models.user import ApiKey, User
from watermeter.schemas.auth import ApiKeyCreateRequest, ApiKeyCreateResponse, ApiKeyResponse
from watermeter.schemas.common import ApiResponse
from watermeter.services.auth_service import create_api_key, list_api_keys, revoke_api_key
from watermeter.utils.dates import isoformat

router = APIRouter(prefix="/api-keys", tags=["api-keys"])


def _key_fields(api_key: ApiKey) -> dict:
    return {
        "id": api_key.id,
        "name": api_key.name,
        "key_prefix": api_key.key_prefix,
        "is_active": api_key.is_active,
        "expires_at": isoformat(api_key.expires_at),
        "last_used_at": isoformat(api_key.last_used_at),
        "created_at": isoformat(api_key.created_at) or "",
    }


@router.get("", response_model=ApiResponse[list[ApiKeyResponse]])
def list_keys(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    keys = list_api_keys(user, session)
    return ApiResponse(
        message="API keys retrieved successfully",
        data=[ApiKeyResponse(**_key_fields(k)) for k in keys],
    )


@router.post("", response_model=ApiResponse[ApiKeyCreateResponse], status_code=201)
def create_key(
    request: ApiKeyCreateRequest,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    api_key, plain = create_api_key(user, request.name, session, request.expires_in_days)
    return ApiResponse(
        message="API key created successfully",
        data=ApiKeyCreateResponse(key=plain, **_key_fields(api_key)),
    )


@router.delete("/{key_id}", response_model=ApiResponse[ApiKeyResponse])
def revoke_key(
    key_id: str,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    try:
        api_key = revoke_api_key(key_id, user, session)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return ApiResponse(message="API key revoked successfully", data=ApiKeyResponse(**_key_fields(api_key)))
