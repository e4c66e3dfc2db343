"""Usage log endpoints."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from watermeter.api.deps import get_api_key_user, get_current_user, get_gateway
from watermeter.database import get_session
from watermeter.models.device import Device
from watermeter.models.ledger import UsageLog
from watermeter.models.user import User
from watermeter.schemas.common import ApiResponse, Page, page_of
from watermeter.schemas.device import UsageRequest, UsageResponse
from watermeter.schemas.ledger import UsageLogResponse, UsageStatsResponse
from watermeter.services import registry, reporting
from watermeter.services.gateway import DeviceGateway
from watermeter.utils.dates import isoformat
from watermeter.utils.money import to_number

router = APIRouter(prefix="/usage", tags=["usage"])


def _usage_to_response(log: UsageLog, device: Device) -> UsageLogResponse:
    return UsageLogResponse(
        id=log.id,
        device_id=log.device_id,
        device_key=device.device_key,
        usage_amount=to_number(log.usage_amount),
        timestamp=isoformat(log.timestamp) or "",
    )


@router.post("/log", response_model=ApiResponse[UsageResponse])
def log_usage(
    request: UsageRequest,
    _caller: Optional[User] = Depends(get_api_key_user),
    gateway: DeviceGateway = Depends(get_gateway),
):
    result = gateway.log_usage(request.device_key, request.usage_amount)
    message = "Usage logged successfully" if result["can_use"] else "Insufficient balance"
    return ApiResponse(message=message, data=result)


@router.get("", response_model=ApiResponse[Page[UsageLogResponse]])
def list_usage(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    device_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    rows, total = reporting.list_usage(
        user.id, user.role, session,
        page=page, limit=limit, device_id=device_id, start=start_date, end=end_date,
    )
    items = [_usage_to_response(log, d) for log, d in rows]
    return ApiResponse(message="Usage logs retrieved successfully", data=page_of(items, total, page, limit))


@router.get("/stats", response_model=ApiResponse[UsageStatsResponse])
def usage_stats(
    time_range: int = Query(default=30, ge=1, le=365),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    stats = reporting.usage_stats(user.id, user.role, session, days=time_range)
    stats["total_usage"] = to_number(stats["total_usage"])
    for entry in stats["top_devices"]:
        entry["usage_amount"] = to_number(entry["usage_amount"])
    for entry in stats["daily_usage"]:
        entry["usage"] = to_number(entry["usage"])
    return ApiResponse(message="Usage statistics retrieved successfully", data=stats)


@router.get("/device/{device_id}", response_model=ApiResponse[Page[UsageLogResponse]])
def usage_for_device(
    device_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    device = registry.get_device_for(device_id, user.id, user.role, session)
    rows, total = reporting.list_usage(
        user.id, user.role, session,
        page=page, limit=limit, device_id=device.id, start=start_date, end=end_date,
    )
    items = [_usage_to_response(log, d) for log, d in rows]
    return ApiResponse(message="Usage logs retrieved successfully", data=page_of(items, total, page, limit))
