"""Device gateway: the device-facing actions, independent of transport.

HTTP handlers and the MQTT bridge both call these methods, so a device gets
the same validation and the same answer whichever way it connects. Failures
are raised as ``SettlementError`` subclasses for the transport to format.
"""

from watermeter.services.settlement import SettlementEngine
from watermeter.utils.money import to_number


class DeviceGateway:
    def __init__(self, engine: SettlementEngine):
        self.engine = engine

    def authenticate(self, device_key: str) -> dict:
        device = self.engine.authenticate(device_key)
        return {
            "valid": True,
            "device_id": device.id,
            "status": device.is_active,
        }

    def check_balance(self, device_key: str) -> dict:
        view = self.engine.check_balance(device_key)
        return {
            "valid": True,
            "balance": to_number(view.balance),
            "last_token": view.last_token,
        }

    def log_usage(self, device_key: str, usage_amount) -> dict:
        result = self.engine.log_usage(device_key, usage_amount)
        body = {
            "valid": result.can_use,
            "can_use": result.can_use,
            "remaining_balance": to_number(result.remaining_balance),
        }
        if not result.can_use:
            body["error"] = "Insufficient balance"
        return body

    def redeem_token(self, device_key: str, token: str) -> dict:
        redemption = self.engine.redeem_token(device_key, token)
        return {
            "valid": True,
            "balance": to_number(redemption.balance),
            "amount": to_number(redemption.amount),
        }

    def heartbeat(self, device_key: str) -> None:
        self.engine.heartbeat(device_key)


_default: DeviceGateway | None = None


def default_gateway() -> DeviceGateway:
    """The process-wide gateway over the configured database."""
    global _default
    if _default is None:
        from watermeter.database import engine

        _default = DeviceGateway(SettlementEngine(engine))
    return _default
