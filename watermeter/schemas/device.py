"""Device request/response schemas, operator and device-facing."""

from typing import Any, Optional

from pydantic import BaseModel


class DeviceCreateRequest(BaseModel):
    device_key: str
    user_id: Optional[str] = None  # admins may assign another owner


class DeviceUpdateRequest(BaseModel):
    device_key: Optional[str] = None
    is_active: Optional[bool] = None


class DeviceResponse(BaseModel):
    id: str
    device_key: str
    user_id: str
    is_active: bool
    balance: float
    last_token: str
    last_seen: Optional[str]
    created_at: str


class DeviceStatsResponse(BaseModel):
    total: int
    active: int
    inactive: int
    online: int
    never_seen: int


class DeviceStatusEntry(BaseModel):
    device_key: str
    is_active: bool
    last_seen: Optional[str]
    is_online: bool


class DeviceStatusResponse(BaseModel):
    summary: DeviceStatsResponse
    devices: list[DeviceStatusEntry]


# --- Device-facing (HTTP mirror of the MQTT actions) ---

class DeviceKeyRequest(BaseModel):
    device_key: str


class UsageRequest(BaseModel):
    device_key: str
    usage_amount: Any  # decimal, parsed by the settlement engine


class RedeemRequest(BaseModel):
    device_key: str
    token: str


class DeviceAuthResponse(BaseModel):
    valid: bool
    device_id: str
    status: bool


class BalanceCheckResponse(BaseModel):
    valid: bool
    balance: float
    last_token: str


class UsageResponse(BaseModel):
    valid: bool
    can_use: bool
    remaining_balance: float
    error: Optional[str] = None


class RedeemResponse(BaseModel):
    valid: bool
    balance: float
    amount: float
