"""Device model."""

import secrets
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


class Device(SQLModel, table=True):
    __tablename__ = "devices"

    id: str = Field(default_factory=lambda: f"dev_{secrets.token_hex(4)}", primary_key=True)
    device_key: str = Field(index=True, unique=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    is_active: bool = Field(default=True)
    last_seen: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
