"""Typed failures raised by the settlement core and its collaborators.

Each carries a stable ``code`` that devices can branch on and the HTTP
status the gateway answers with.
"""


class SettlementError(Exception):
    code = "error"
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidAmount(SettlementError):
    code = "invalid_amount"
    default_message = "Invalid amount"


class ValidationFailed(SettlementError):
    code = "validation_error"
    default_message = "Validation failed"


class DeviceNotFound(SettlementError):
    code = "device_not_found"
    status_code = 404
    default_message = "Device not found"


class DeviceInactive(SettlementError):
    code = "device_inactive"
    status_code = 403
    default_message = "Device is inactive"


class DeviceKeyConflict(SettlementError):
    code = "device_key_conflict"
    status_code = 409
    default_message = "Device key already exists"


class TokenNotFound(SettlementError):
    code = "token_not_found"
    status_code = 404
    default_message = "Invalid token"


class TokenAlreadyUsed(SettlementError):
    code = "token_already_used"
    status_code = 409
    default_message = "Token has already been used"


class DeviceMismatch(SettlementError):
    code = "device_mismatch"
    default_message = "Token does not belong to this device"


class AccessDenied(SettlementError):
    code = "forbidden"
    status_code = 403
    default_message = "You do not have permission to perform this action"


class InsufficientBalance(SettlementError):
    """Raised by the ledger; the settlement engine turns it into a result."""

    code = "insufficient_balance"
    status_code = 402
    default_message = "Insufficient balance"

    def __init__(self, balance: int, requested: int):
        self.balance = balance
        self.requested = requested
        super().__init__()
