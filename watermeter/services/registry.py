"""Device registry: identity, active flag and ownership.

``find_device_by_key`` is the only lookup-by-key path; both the HTTP and
MQTT gateways go through it.
"""

import logging
from datetime import timedelta

from sqlalchemy import delete
from sqlmodel import Session, col, func, select

from watermeter.config import settings
from watermeter.models.device import Device
from watermeter.models.ledger import Balance, Token, UsageLog
from watermeter.models.user import User
from watermeter.services import access
from watermeter.services.errors import (
    AccessDenied,
    DeviceInactive,
    DeviceKeyConflict,
    DeviceNotFound,
    ValidationFailed,
)
from watermeter.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)


def find_device_by_key(device_key: str, session: Session) -> Device | None:
    return session.exec(
        select(Device)
        .where(Device.device_key == device_key)
        .execution_options(populate_existing=True)
    ).first()


def find_active_device_by_key(device_key: str, session: Session) -> Device:
    """Resolve a device key or raise DeviceNotFound / DeviceInactive."""
    if not device_key:
        raise ValidationFailed("Device key is required")
    device = find_device_by_key(device_key, session)
    if not device:
        raise DeviceNotFound()
    if not device.is_active:
        raise DeviceInactive()
    return device


def touch_last_seen(device: Device, session: Session) -> None:
    device.last_seen = utcnow()
    session.add(device)


def get_device_for(device_id: str, user_id: str, role: str, session: Session) -> Device:
    """Fetch a device the caller may see; strangers get the same 404 as missing ids."""
    device = session.get(Device, device_id)
    if not access.is_owner_or_admin(user_id, role, device):
        raise DeviceNotFound("Device not found or you do not have permission")
    return device


def create_device(
    device_key: str,
    creator_id: str,
    creator_role: str,
    session: Session,
    owner_id: str | None = None,
) -> Device:
    access.require(creator_role, access.WRITE)
    device_key = (device_key or "").strip()
    if not device_key:
        raise ValidationFailed("Device key is required")

    # Only admins may create devices on behalf of someone else
    if owner_id and access.is_admin(creator_role):
        if not session.get(User, owner_id):
            raise ValidationFailed("Owner user not found")
    else:
        owner_id = creator_id

    if find_device_by_key(device_key, session):
        raise DeviceKeyConflict()

    device = Device(device_key=device_key, user_id=owner_id)
    session.add(device)
    session.flush()
    # Balance starts at zero alongside the device
    session.add(Balance(device_id=device.id))
    session.flush()
    logger.info("Device %s created for user %s", device.device_key, owner_id)
    return device


def update_device(
    device_id: str,
    user_id: str,
    role: str,
    session: Session,
    device_key: str | None = None,
    is_active: bool | None = None,
) -> Device:
    access.require(role, access.WRITE)
    device = get_device_for(device_id, user_id, role, session)

    if device_key is not None:
        device_key = device_key.strip()
        if not device_key:
            raise ValidationFailed("Device key cannot be empty")
        if device_key != device.device_key and find_device_by_key(device_key, session):
            raise DeviceKeyConflict()
        device.device_key = device_key
    if is_active is not None:
        device.is_active = is_active

    device.updated_at = utcnow()
    session.add(device)
    session.flush()
    return device


def delete_device(device_id: str, user_id: str, role: str, session: Session) -> None:
    """Hard delete: removes the device with its tokens, usage logs and balance."""
    if access.DELETE not in access.resolve_capabilities(role):
        raise AccessDenied("Only administrators can delete devices")
    device = get_device_for(device_id, user_id, role, session)

    for model in (Token, UsageLog, Balance):
        session.connection().execute(delete(model).where(model.device_id == device.id))
    session.delete(device)
    session.flush()
    logger.info("Device %s deleted by user %s", device.device_key, user_id)


def list_devices(
    user_id: str,
    role: str,
    session: Session,
    page: int = 1,
    limit: int = 10,
    search: str = "",
    is_active: bool | None = None,
) -> tuple[list[Device], int]:
    query = access.scope_to_owner(select(Device), user_id, role)
    if is_active is not None:
        query = query.where(Device.is_active == is_active)
    if search:
        query = query.where(col(Device.device_key).contains(search))

    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    devices = session.exec(
        query.order_by(col(Device.created_at).desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    return list(devices), total


def is_online(device: Device) -> bool:
    last_seen = as_utc(device.last_seen)
    if not device.is_active or last_seen is None:
        return False
    return last_seen > utcnow() - timedelta(seconds=settings.device_online_seconds)


def device_stats(user_id: str, role: str, session: Session) -> dict:
    devices = session.exec(access.scope_to_owner(select(Device), user_id, role)).all()
    active = sum(1 for d in devices if d.is_active)
    online = sum(1 for d in devices if is_online(d))
    never_seen = sum(1 for d in devices if d.last_seen is None)
    return {
        "total": len(devices),
        "active": active,
        "inactive": len(devices) - active,
        "online": online,
        "never_seen": never_seen,
    }

