"""Water Meter Database Models."""

from watermeter.models.user import ApiKey, User
from watermeter.models.device import Device
from watermeter.models.ledger import Balance, Token, UsageLog

__all__ = [
    "User",
    "ApiKey",
    "Device",
    "Token",
    "Balance",
    "UsageLog",
]
