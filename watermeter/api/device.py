"""Device-facing endpoints: the HTTP mirror of the MQTT request topics.

Devices authenticate with an API key (``X-API-Key``) and address themselves
by device key. Every handler delegates to the shared DeviceGateway.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from watermeter.api.deps import get_api_key_user, get_gateway
from watermeter.models.user import User
from watermeter.schemas.common import ApiResponse
from watermeter.schemas.device import (
    BalanceCheckResponse,
    DeviceAuthResponse,
    DeviceKeyRequest,
    RedeemRequest,
    RedeemResponse,
    UsageRequest,
    UsageResponse,
)
from watermeter.services.gateway import DeviceGateway

router = APIRouter(prefix="/device", tags=["device"])


@router.post("/auth", response_model=ApiResponse[DeviceAuthResponse])
def authenticate_device(
    request: DeviceKeyRequest,
    _caller: Optional[User] = Depends(get_api_key_user),
    gateway: DeviceGateway = Depends(get_gateway),
):
    result = gateway.authenticate(request.device_key)
    return ApiResponse(message="Device authenticated successfully", data=result)


@router.post("/balance", response_model=ApiResponse[BalanceCheckResponse])
def check_device_balance(
    request: DeviceKeyRequest,
    _caller: Optional[User] = Depends(get_api_key_user),
    gateway: DeviceGateway = Depends(get_gateway),
):
    result = gateway.check_balance(request.device_key)
    return ApiResponse(message="Balance retrieved successfully", data=result)


@router.post("/usage", response_model=ApiResponse[UsageResponse])
def log_device_usage(
    request: UsageRequest,
    _caller: Optional[User] = Depends(get_api_key_user),
    gateway: DeviceGateway = Depends(get_gateway),
):
    """Debit metered usage. Running out of balance is a normal answer (can_use=false)."""
    result = gateway.log_usage(request.device_key, request.usage_amount)
    message = "Usage logged successfully" if result["can_use"] else "Insufficient balance"
    return ApiResponse(message=message, data=result)


@router.post("/token/validate", response_model=ApiResponse[RedeemResponse])
def validate_device_token(
    request: RedeemRequest,
    _caller: Optional[User] = Depends(get_api_key_user),
    gateway: DeviceGateway = Depends(get_gateway),
):
    result = gateway.redeem_token(request.device_key, request.token)
    return ApiResponse(message="Token validated successfully", data=result)
