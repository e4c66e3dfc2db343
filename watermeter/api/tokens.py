"""Prepaid token endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from watermeter.api.deps import get_api_key_user, get_current_user, get_gateway, require_capability
from watermeter.database import get_session
from watermeter.models.device import Device
from watermeter.models.ledger import Token
from watermeter.models.user import User
from watermeter.schemas.common import ApiResponse, Page, page_of
from watermeter.schemas.device import RedeemRequest, RedeemResponse
from watermeter.schemas.ledger import TokenCreateRequest, TokenResponse, TokenStatsResponse
from watermeter.services import access, registry, reporting
from watermeter.services.errors import TokenNotFound
from watermeter.services.gateway import DeviceGateway
from watermeter.services.settlement import TokenView
from watermeter.utils.dates import isoformat
from watermeter.utils.money import to_number

router = APIRouter(prefix="/tokens", tags=["tokens"])


def _token_to_response(token: Token | TokenView, device_key: str) -> TokenResponse:
    return TokenResponse(
        id=token.id,
        device_id=token.device_id,
        device_key=device_key,
        token=token.token,
        amount=to_number(token.amount),
        status=token.status,
        used_at=isoformat(token.used_at),
        created_at=isoformat(token.created_at) or "",
    )


@router.post("", response_model=ApiResponse[TokenResponse], status_code=201)
def issue_token(
    request: TokenCreateRequest,
    user: User = Depends(require_capability(access.ISSUE_TOKENS)),
    session: Session = Depends(get_session),
    gateway: DeviceGateway = Depends(get_gateway),
):
    """Issue a prepaid token for a device the caller may manage."""
    registry.get_device_for(request.device_id, user.id, user.role, session)
    view = gateway.engine.issue_token(request.device_id, request.amount)
    return ApiResponse(message="Token created successfully", data=_token_to_response(view, view.device_key))


@router.post("/validate", response_model=ApiResponse[RedeemResponse])
def validate_token(
    request: RedeemRequest,
    _caller: Optional[User] = Depends(get_api_key_user),
    gateway: DeviceGateway = Depends(get_gateway),
):
    """Redeem a token into the device's balance."""
    result = gateway.redeem_token(request.device_key, request.token)
    return ApiResponse(message="Token validated successfully", data=result)


@router.get("", response_model=ApiResponse[Page[TokenResponse]])
def list_tokens(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    device_id: Optional[str] = None,
    status: Optional[str] = None,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    rows, total = reporting.list_tokens(
        user.id, user.role, session, page=page, limit=limit, device_id=device_id, status=status
    )
    items = [_token_to_response(t, d.device_key) for t, d in rows]
    return ApiResponse(message="Tokens retrieved successfully", data=page_of(items, total, page, limit))


@router.get("/stats", response_model=ApiResponse[TokenStatsResponse])
def token_stats(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    stats = reporting.token_stats(user.id, user.role, session)
    for key in ("total_amount", "redeemed_amount", "outstanding_amount"):
        stats[key] = to_number(stats[key])
    return ApiResponse(message="Token statistics retrieved successfully", data=stats)


@router.get("/device/{device_id}", response_model=ApiResponse[Page[TokenResponse]])
def tokens_for_device(
    device_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    status: Optional[str] = None,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    device: Device = registry.get_device_for(device_id, user.id, user.role, session)
    rows, total = reporting.list_tokens(
        user.id, user.role, session, page=page, limit=limit, device_id=device.id, status=status
    )
    items = [_token_to_response(t, d.device_key) for t, d in rows]
    return ApiResponse(message="Tokens retrieved successfully", data=page_of(items, total, page, limit))


@router.get("/{token_id}", response_model=ApiResponse[TokenResponse])
def get_token(
    token_id: str,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    row = reporting.get_token(token_id, user.id, user.role, session)
    if not row:
        raise TokenNotFound("Token not found")
    token, device = row
    return ApiResponse(message="Token retrieved successfully", data=_token_to_response(token, device.device_key))
