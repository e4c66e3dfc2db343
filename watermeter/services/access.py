"""Role capabilities and device ownership checks.

Roles resolve to a closed set of capability tags; handlers ask for tags
instead of comparing role names. Both admin tiers see every device, staff and
plain users only their own.
"""

from sqlmodel import col

from watermeter.models.device import Device
from watermeter.services.errors import AccessDenied

SUPER_ADMIN = "SUPER_ADMIN"
ADMIN = "ADMIN"
STAFF = "STAFF"
USER = "USER"

ROLES = (SUPER_ADMIN, ADMIN, STAFF, USER)

# Capability tags
READ = "read"
WRITE = "write"
DELETE = "delete"
ISSUE_TOKENS = "issue_tokens"
ALL_DEVICES = "all_devices"

_ADMIN_CAPS = frozenset({READ, WRITE, DELETE, ISSUE_TOKENS, ALL_DEVICES})

_CAPABILITIES: dict[str, frozenset[str]] = {
    SUPER_ADMIN: _ADMIN_CAPS,
    ADMIN: _ADMIN_CAPS,
    STAFF: frozenset({READ, WRITE, ISSUE_TOKENS}),
    USER: frozenset({READ}),
}


def resolve_capabilities(role: str) -> frozenset[str]:
    return _CAPABILITIES.get(role, frozenset())


def is_admin(role: str) -> bool:
    return ALL_DEVICES in resolve_capabilities(role)


def require(role: str, capability: str) -> None:
    if capability not in resolve_capabilities(role):
        raise AccessDenied()


def is_owner_or_admin(user_id: str, role: str, device: Device | None) -> bool:
    if device is None:
        return False
    if is_admin(role):
        return True
    return device.user_id == user_id


def scope_to_owner(statement, user_id: str, role: str):
    """Restrict a select that joins Device to the caller's devices."""
    if is_admin(role):
        return statement
    return statement.where(col(Device.user_id) == user_id)
