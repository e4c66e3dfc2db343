"""Token, balance and usage schemas."""

from typing import Any, Optional

from pydantic import BaseModel


class TokenCreateRequest(BaseModel):
    device_id: str
    amount: Any  # positive decimal, parsed by the settlement engine


class TokenResponse(BaseModel):
    id: str
    device_id: str
    device_key: str
    token: str
    amount: float
    status: str
    used_at: Optional[str]
    created_at: str


class TokenStatsResponse(BaseModel):
    total: int
    used: int
    unused: int
    total_amount: float
    redeemed_amount: float
    outstanding_amount: float


class BalanceResponse(BaseModel):
    device_id: str
    device_key: str
    is_active: bool
    balance: float
    last_token: str
    updated_at: Optional[str]


class BalanceStatsResponse(BaseModel):
    total_balance: float
    total_devices: int
    low_balance_devices: int
    avg_usage_per_day: float


class UsageLogResponse(BaseModel):
    id: str
    device_id: str
    device_key: str
    usage_amount: float
    timestamp: str


class TopDevice(BaseModel):
    device_id: str
    device_key: str
    usage_amount: float


class DailyUsage(BaseModel):
    date: str
    usage: float


class UsageStatsResponse(BaseModel):
    total_usage: float
    usage_count: int
    top_devices: list[TopDevice]
    daily_usage: list[DailyUsage]
    time_range: int
