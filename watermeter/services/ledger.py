"""Balance ledger: the authoritative per-device balance.

Every function expects a session that is already inside the caller's
transaction; nothing here commits. Mutations are single conditional UPDATE
statements so the delta is applied by the database, never written back from
a stale read.
"""

import secrets

from sqlalchemy import update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, select

from watermeter.models.ledger import Balance
from watermeter.services.errors import InsufficientBalance, InvalidAmount
from watermeter.utils.dates import utcnow

# Largest value the SQLite INTEGER column holds
MAX_BALANCE = 2**63 - 1


def read(device_id: str, session: Session) -> Balance | None:
    """Current balance row, or None if the device never settled anything."""
    return session.exec(
        select(Balance)
        .where(Balance.device_id == device_id)
        .execution_options(populate_existing=True)
    ).first()


def get_or_create(device_id: str, session: Session) -> Balance:
    balance = read(device_id, session)
    if balance:
        return balance

    # device_id is unique, so a concurrent creator makes this a no-op
    session.connection().execute(
        sqlite_insert(Balance)
        .values(
            id=f"bal_{secrets.token_hex(8)}",
            device_id=device_id,
            balance=0,
            last_token="",
            updated_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["device_id"])
    )
    return read(device_id, session)


def credit(device_id: str, amount: int, token_marker: str, session: Session) -> Balance:
    if amount <= 0:
        raise InvalidAmount("Credit amount must be greater than zero")
    if amount > MAX_BALANCE:
        raise InvalidAmount("Credit amount is too large")

    get_or_create(device_id, session)
    result = session.connection().execute(
        update(Balance)
        .where(Balance.device_id == device_id, Balance.balance <= MAX_BALANCE - amount)
        .values(
            balance=Balance.balance + amount,
            last_token=token_marker,
            updated_at=utcnow(),
        )
    )
    if result.rowcount == 0:
        raise InvalidAmount("Credit would exceed the maximum balance")
    return read(device_id, session)


def debit(device_id: str, amount: int, session: Session) -> Balance:
    """Subtract ``amount`` or raise InsufficientBalance, leaving the row untouched."""
    if amount <= 0:
        raise InvalidAmount("Debit amount must be greater than zero")

    result = session.connection().execute(
        update(Balance)
        .where(Balance.device_id == device_id, Balance.balance >= amount)
        .values(balance=Balance.balance - amount, updated_at=utcnow())
    )
    if result.rowcount == 0:
        current = read(device_id, session)
        raise InsufficientBalance(balance=current.balance if current else 0, requested=amount)
    return read(device_id, session)
