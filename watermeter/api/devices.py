"""Device management API endpoints (operators)."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session, col, select

from watermeter.api.deps import get_current_user, require_capability
from watermeter.database import get_session
from watermeter.models.device import Device
from watermeter.models.ledger import Balance
from watermeter.models.user import User
from watermeter.schemas.common import ApiResponse, Page, page_of
from watermeter.schemas.device import (
    DeviceCreateRequest,
    DeviceResponse,
    DeviceStatsResponse,
    DeviceUpdateRequest,
)
from watermeter.services import access, registry
from watermeter.utils.dates import isoformat
from watermeter.utils.money import to_number

router = APIRouter(prefix="/devices", tags=["devices"])


def _device_to_response(device: Device, balance: Balance | None) -> DeviceResponse:
    return DeviceResponse(
        id=device.id,
        device_key=device.device_key,
        user_id=device.user_id,
        is_active=device.is_active,
        balance=to_number(balance.balance) if balance else 0,
        last_token=balance.last_token if balance else "",
        last_seen=isoformat(device.last_seen),
        created_at=isoformat(device.created_at) or "",
    )


def _balances_for(devices: list[Device], session: Session) -> dict[str, Balance]:
    if not devices:
        return {}
    rows = session.exec(
        select(Balance).where(col(Balance.device_id).in_([d.id for d in devices]))
    ).all()
    return {b.device_id: b for b in rows}


@router.get("", response_model=ApiResponse[Page[DeviceResponse]])
def list_devices(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    search: str = "",
    is_active: Optional[bool] = None,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """List devices; non-admins only see their own."""
    devices, total = registry.list_devices(
        user.id, user.role, session, page=page, limit=limit, search=search, is_active=is_active
    )
    balances = _balances_for(devices, session)
    items = [_device_to_response(d, balances.get(d.id)) for d in devices]
    return ApiResponse(message="Devices retrieved successfully", data=page_of(items, total, page, limit))


@router.get("/stats", response_model=ApiResponse[DeviceStatsResponse])
def device_stats(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    stats = registry.device_stats(user.id, user.role, session)
    return ApiResponse(message="Device statistics retrieved successfully", data=stats)


@router.get("/{device_id}", response_model=ApiResponse[DeviceResponse])
def get_device(
    device_id: str,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    device = registry.get_device_for(device_id, user.id, user.role, session)
    balance = _balances_for([device], session).get(device.id)
    return ApiResponse(message="Device retrieved successfully", data=_device_to_response(device, balance))


@router.post("", response_model=ApiResponse[DeviceResponse], status_code=201)
def create_device(
    request: DeviceCreateRequest,
    user: User = Depends(require_capability(access.WRITE)),
    session: Session = Depends(get_session),
):
    device = registry.create_device(
        request.device_key, user.id, user.role, session, owner_id=request.user_id
    )
    session.commit()
    session.refresh(device)
    balance = _balances_for([device], session).get(device.id)
    return ApiResponse(message="Device created successfully", data=_device_to_response(device, balance))


@router.patch("/{device_id}", response_model=ApiResponse[DeviceResponse])
def update_device(
    device_id: str,
    request: DeviceUpdateRequest,
    user: User = Depends(require_capability(access.WRITE)),
    session: Session = Depends(get_session),
):
    """Change a device's key or (de)activate it."""
    device = registry.update_device(
        device_id,
        user.id,
        user.role,
        session,
        device_key=request.device_key,
        is_active=request.is_active,
    )
    session.commit()
    session.refresh(device)
    balance = _balances_for([device], session).get(device.id)
    return ApiResponse(message="Device updated successfully", data=_device_to_response(device, balance))


@router.delete("/{device_id}", response_model=ApiResponse[None])
def delete_device(
    device_id: str,
    user: User = Depends(require_capability(access.DELETE)),
    session: Session = Depends(get_session),
):
    """Hard delete a device together with its tokens, usage logs and balance."""
    registry.delete_device(device_id, user.id, user.role, session)
    session.commit()
    return ApiResponse(message="Device deleted successfully")
