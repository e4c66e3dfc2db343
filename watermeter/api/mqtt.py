"""MQTT bridge status and operator commands."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlmodel import Session, col, select

from watermeter.api.deps import get_current_user, require_admin, require_capability
from watermeter.config import settings
from watermeter.database import get_session
from watermeter.models.device import Device
from watermeter.models.user import User
from watermeter.mqtt.bridge import get_bridge
from watermeter.schemas.common import ApiResponse
from watermeter.schemas.device import DeviceStatusResponse
from watermeter.services import access, registry
from watermeter.utils.dates import isoformat

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mqtt", tags=["mqtt"])

COMMANDS = ("reboot", "update_config", "check_status")
BROADCAST_COMMANDS = ("system_update", "emergency_stop", "config_update")


class CommandRequest(BaseModel):
    device_key: str
    command: str
    data: dict[str, Any] = {}


class BroadcastRequest(BaseModel):
    command: str
    data: dict[str, Any] = {}


@router.get("/status", response_model=ApiResponse[dict])
def mqtt_status(user: User = Depends(get_current_user)):
    return ApiResponse(message="MQTT status retrieved successfully", data=get_bridge().status())


@router.get("/device-status", response_model=ApiResponse[DeviceStatusResponse])
def device_status(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Online/offline view derived from each device's last heartbeat or request."""
    devices = session.exec(
        access.scope_to_owner(select(Device), user.id, user.role)
        .order_by(col(Device.last_seen).desc())
    ).all()
    entries = [
        {
            "device_key": d.device_key,
            "is_active": d.is_active,
            "last_seen": isoformat(d.last_seen),
            "is_online": registry.is_online(d),
        }
        for d in devices
    ]
    return ApiResponse(
        message="Device status retrieved successfully",
        data={"summary": registry.device_stats(user.id, user.role, session), "devices": entries},
    )


@router.post("/send-command", response_model=ApiResponse[dict])
def send_command(
    request: CommandRequest,
    user: User = Depends(require_capability(access.WRITE)),
    session: Session = Depends(get_session),
):
    if request.command not in COMMANDS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown command")

    device = registry.find_device_by_key(request.device_key, session)
    if not access.is_owner_or_admin(user.id, user.role, device):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Device not found or you do not have permission",
        )

    if not get_bridge().send_command(request.device_key, request.command, request.data):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to send command - MQTT not connected",
        )
    return ApiResponse(
        message="Command sent successfully",
        data={"device_key": request.device_key, "command": request.command, "data": request.data},
    )


@router.post("/broadcast", response_model=ApiResponse[dict])
def broadcast(request: BroadcastRequest, admin: User = Depends(require_admin)):
    """Send one command to every device at once."""
    if request.command not in BROADCAST_COMMANDS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown command")

    if not get_bridge().broadcast(request.command, request.data):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to send broadcast - MQTT not connected",
        )
    logger.info("Broadcast %s sent by %s", request.command, admin.id)
    return ApiResponse(
        message="Broadcast sent successfully",
        data={"command": request.command, "data": request.data},
    )


@router.post("/reconnect", response_model=ApiResponse[dict])
def reconnect(admin: User = Depends(require_admin)):
    if not settings.mqtt_enabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="MQTT is disabled")
    if not get_bridge().reconnect():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="MQTT reconnection failed",
        )
    logger.info("MQTT reconnect requested by %s", admin.id)
    return ApiResponse(message="MQTT reconnection initiated", data=get_bridge().status())
