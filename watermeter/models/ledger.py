"""Token, balance and usage models.

All money columns hold integer minor units (see ``watermeter.utils.money``).
"""

import secrets
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel

TOKEN_UNUSED = "unused"
TOKEN_USED = "used"


class Token(SQLModel, table=True):
    __tablename__ = "tokens"

    id: str = Field(default_factory=lambda: f"tok_{secrets.token_hex(8)}", primary_key=True)
    device_id: str = Field(foreign_key="devices.id", index=True)
    token: str = Field(index=True, unique=True)
    amount: int
    status: str = Field(default=TOKEN_UNUSED, index=True)  # 'unused' | 'used'
    used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Balance(SQLModel, table=True):
    __tablename__ = "balances"

    id: str = Field(default_factory=lambda: f"bal_{secrets.token_hex(8)}", primary_key=True)
    device_id: str = Field(foreign_key="devices.id", unique=True)
    balance: int = Field(default=0)
    last_token: str = Field(default="")
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class UsageLog(SQLModel, table=True):
    __tablename__ = "usage_logs"

    id: str = Field(default_factory=lambda: f"use_{secrets.token_hex(8)}", primary_key=True)
    device_id: str = Field(foreign_key="devices.id", index=True)
    usage_amount: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
