"""Balance endpoints."""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from watermeter.api.deps import get_api_key_user, get_current_user, get_gateway
from watermeter.database import get_session
from watermeter.models.device import Device
from watermeter.models.ledger import Balance
from watermeter.models.user import User
from watermeter.schemas.common import ApiResponse, Page, page_of
from watermeter.schemas.device import BalanceCheckResponse, DeviceKeyRequest
from watermeter.schemas.ledger import BalanceResponse, BalanceStatsResponse
from watermeter.services import reporting
from watermeter.services.gateway import DeviceGateway
from watermeter.utils.dates import isoformat
from watermeter.utils.money import to_minor, to_number

router = APIRouter(prefix="/balances", tags=["balances"])

LOW_BALANCE_THRESHOLD = 10  # major units


def _balance_to_response(balance: Balance | None, device: Device) -> BalanceResponse:
    return BalanceResponse(
        device_id=device.id,
        device_key=device.device_key,
        is_active=device.is_active,
        balance=to_number(balance.balance) if balance else 0,
        last_token=balance.last_token if balance else "",
        updated_at=isoformat(balance.updated_at) if balance else None,
    )


@router.post("/check", response_model=ApiResponse[BalanceCheckResponse])
def check_balance(
    request: DeviceKeyRequest,
    _caller: Optional[User] = Depends(get_api_key_user),
    gateway: DeviceGateway = Depends(get_gateway),
):
    result = gateway.check_balance(request.device_key)
    return ApiResponse(message="Balance retrieved successfully", data=result)


@router.get("", response_model=ApiResponse[Page[BalanceResponse]])
def list_balances(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    min_balance: Optional[Decimal] = None,
    max_balance: Optional[Decimal] = None,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    rows, total = reporting.list_balances(
        user.id,
        user.role,
        session,
        page=page,
        limit=limit,
        min_balance=_bound(min_balance),
        max_balance=_bound(max_balance),
    )
    items = [_balance_to_response(b, d) for b, d in rows]
    return ApiResponse(message="Balances retrieved successfully", data=page_of(items, total, page, limit))


def _bound(value: Decimal | None) -> int | None:
    if value is None:
        return None
    if value <= 0:
        return 0
    return to_minor(value)


@router.get("/stats", response_model=ApiResponse[BalanceStatsResponse])
def balance_stats(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    stats = reporting.balance_stats(user.id, user.role, to_minor(LOW_BALANCE_THRESHOLD), session)
    stats["total_balance"] = to_number(stats["total_balance"])
    stats["avg_usage_per_day"] = to_number(stats["avg_usage_per_day"])
    return ApiResponse(message="Balance statistics retrieved successfully", data=stats)


@router.get("/device/{device_id}", response_model=ApiResponse[BalanceResponse])
def balance_for_device(
    device_id: str,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """A device that never settled reads as zero."""
    balance, device = reporting.balance_for_device(device_id, user.id, user.role, session)
    return ApiResponse(message="Balance retrieved successfully", data=_balance_to_response(balance, device))
