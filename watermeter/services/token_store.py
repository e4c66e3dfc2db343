"""Prepaid token issuing and redemption.

A token moves ``unused -> used`` exactly once. The flip and the balance
credit run in the caller's transaction, so they commit or roll back together.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update
from sqlmodel import Session, select

from watermeter.config import settings
from watermeter.models.device import Device
from watermeter.models.ledger import TOKEN_UNUSED, TOKEN_USED, Token
from watermeter.services import ledger
from watermeter.services.errors import (
    DeviceInactive,
    DeviceMismatch,
    DeviceNotFound,
    InvalidAmount,
    TokenAlreadyUsed,
    TokenNotFound,
    ValidationFailed,
)
from watermeter.utils.dates import utcnow
from watermeter.utils.security import generate_token_string

logger = logging.getLogger(__name__)


@dataclass
class Redemption:
    token_id: str
    device_id: str
    token: str
    amount: int
    balance: int
    used_at: datetime


def find_by_string(token_string: str, session: Session) -> Token | None:
    return session.exec(
        select(Token)
        .where(Token.token == token_string)
        .execution_options(populate_existing=True)
    ).first()


def _unique_token_string(session: Session) -> str:
    for _ in range(settings.token_issue_attempts):
        value = generate_token_string()
        taken = session.exec(select(Token.id).where(Token.token == value)).first()
        if not taken:
            return value
        logger.warning("Token string collision, regenerating")
    raise RuntimeError("Could not generate a unique token string")


def issue(device_id: str, amount: int, session: Session) -> Token:
    """Create an unused token worth ``amount`` minor units for a device."""
    if amount <= 0:
        raise InvalidAmount("Token amount must be greater than zero")

    device = session.get(Device, device_id)
    if not device:
        raise DeviceNotFound()

    token = Token(
        device_id=device.id,
        token=_unique_token_string(session),
        amount=amount,
        status=TOKEN_UNUSED,
    )
    session.add(token)
    session.flush()
    return token


def redeem(token_string: str, device_key_claim: str, session: Session) -> Redemption:
    if not token_string:
        raise ValidationFailed("Token is required")

    token = find_by_string(token_string, session)
    if not token:
        raise TokenNotFound()
    if token.status == TOKEN_USED:
        raise TokenAlreadyUsed()

    device = session.get(Device, token.device_id, populate_existing=True)
    if device is None or device.device_key != device_key_claim:
        raise DeviceMismatch()
    if not device.is_active:
        raise DeviceInactive()

    used_at = utcnow()
    flipped = session.connection().execute(
        update(Token)
        .where(Token.id == token.id, Token.status == TOKEN_UNUSED)
        .values(status=TOKEN_USED, used_at=used_at)
    )
    if flipped.rowcount != 1:
        # Another transaction won the race for this token
        raise TokenAlreadyUsed()

    balance = ledger.credit(device.id, token.amount, token.token, session)
    return Redemption(
        token_id=token.id,
        device_id=device.id,
        token=token.token,
        amount=token.amount,
        balance=balance.balance,
        used_at=used_at,
    )
