"""Operator listings and statistics over tokens, balances and usage logs.

All queries join through Device so that staff and plain users only ever see
rows belonging to their own devices.
"""

from datetime import datetime, timedelta

from sqlmodel import Session, col, func, select

from watermeter.models.device import Device
from watermeter.models.ledger import TOKEN_UNUSED, TOKEN_USED, Balance, Token, UsageLog
from watermeter.services import access, registry
from watermeter.utils.dates import utcnow


def _paginate(query, order_by, session: Session, page: int, limit: int):
    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    rows = session.exec(
        query.order_by(order_by).offset((page - 1) * limit).limit(limit)
    ).all()
    return list(rows), total


# --- Tokens ---

def list_tokens(
    user_id: str,
    role: str,
    session: Session,
    page: int = 1,
    limit: int = 10,
    device_id: str | None = None,
    status: str | None = None,
) -> tuple[list[tuple[Token, Device]], int]:
    query = access.scope_to_owner(
        select(Token, Device).join(Device, col(Device.id) == col(Token.device_id)),
        user_id, role,
    )
    if device_id:
        query = query.where(Token.device_id == device_id)
    if status in (TOKEN_USED, TOKEN_UNUSED):
        query = query.where(Token.status == status)
    return _paginate(query, col(Token.created_at).desc(), session, page, limit)


def get_token(token_id: str, user_id: str, role: str, session: Session) -> tuple[Token, Device] | None:
    query = access.scope_to_owner(
        select(Token, Device)
        .join(Device, col(Device.id) == col(Token.device_id))
        .where(Token.id == token_id),
        user_id, role,
    )
    return session.exec(query).first()


def token_stats(user_id: str, role: str, session: Session) -> dict:
    base = access.scope_to_owner(
        select(Token.status, func.count(), func.coalesce(func.sum(Token.amount), 0))
        .join(Device, col(Device.id) == col(Token.device_id)),
        user_id, role,
    ).group_by(Token.status)

    counts = {TOKEN_USED: 0, TOKEN_UNUSED: 0}
    amounts = {TOKEN_USED: 0, TOKEN_UNUSED: 0}
    for status, count, amount in session.exec(base).all():
        counts[status] = count
        amounts[status] = amount

    return {
        "total": counts[TOKEN_USED] + counts[TOKEN_UNUSED],
        "used": counts[TOKEN_USED],
        "unused": counts[TOKEN_UNUSED],
        "total_amount": amounts[TOKEN_USED] + amounts[TOKEN_UNUSED],
        "redeemed_amount": amounts[TOKEN_USED],
        "outstanding_amount": amounts[TOKEN_UNUSED],
    }


# --- Balances ---

def list_balances(
    user_id: str,
    role: str,
    session: Session,
    page: int = 1,
    limit: int = 10,
    min_balance: int | None = None,
    max_balance: int | None = None,
) -> tuple[list[tuple[Balance, Device]], int]:
    query = access.scope_to_owner(
        select(Balance, Device).join(Device, col(Device.id) == col(Balance.device_id)),
        user_id, role,
    )
    if min_balance is not None:
        query = query.where(Balance.balance >= min_balance)
    if max_balance is not None:
        query = query.where(Balance.balance <= max_balance)
    return _paginate(query, col(Balance.updated_at).desc(), session, page, limit)


def balance_for_device(device_id: str, user_id: str, role: str, session: Session) -> tuple[Balance | None, Device]:
    device = registry.get_device_for(device_id, user_id, role, session)
    balance = session.exec(select(Balance).where(Balance.device_id == device.id)).first()
    return balance, device


def balance_stats(user_id: str, role: str, low_threshold: int, session: Session) -> dict:
    scoped = access.scope_to_owner(
        select(Balance.balance).join(Device, col(Device.id) == col(Balance.device_id)),
        user_id, role,
    )
    balances = session.exec(scoped).all()
    devices = session.exec(
        access.scope_to_owner(select(func.count()).select_from(Device), user_id, role)
    ).one()
    usage = usage_totals(user_id, role, session, days=30)
    return {
        "total_balance": sum(balances),
        "total_devices": devices,
        "low_balance_devices": sum(1 for b in balances if b < low_threshold),
        # integer minor units per day, rounded down
        "avg_usage_per_day": usage["total_usage"] // 30,
    }


# --- Usage ---

def _usage_query(user_id: str, role: str, device_id: str | None, start: datetime | None, end: datetime | None):
    query = access.scope_to_owner(
        select(UsageLog, Device).join(Device, col(Device.id) == col(UsageLog.device_id)),
        user_id, role,
    )
    if device_id:
        query = query.where(UsageLog.device_id == device_id)
    if start:
        query = query.where(UsageLog.timestamp >= start)
    if end:
        query = query.where(UsageLog.timestamp <= end)
    return query


def list_usage(
    user_id: str,
    role: str,
    session: Session,
    page: int = 1,
    limit: int = 10,
    device_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> tuple[list[tuple[UsageLog, Device]], int]:
    query = _usage_query(user_id, role, device_id, start, end)
    return _paginate(query, col(UsageLog.timestamp).desc(), session, page, limit)


def usage_totals(user_id: str, role: str, session: Session, days: int = 30) -> dict:
    start = utcnow() - timedelta(days=days)
    rows = session.exec(_usage_query(user_id, role, None, start, None)).all()
    return {
        "total_usage": sum(log.usage_amount for log, _ in rows),
        "usage_count": len(rows),
    }


def usage_stats(user_id: str, role: str, session: Session, days: int = 30) -> dict:
    end = utcnow()
    start = end - timedelta(days=days)
    rows = session.exec(_usage_query(user_id, role, None, start, end)).all()

    per_device: dict[str, dict] = {}
    per_day: dict[str, int] = {}
    # days + 1 buckets: the partial first day through today
    for i in range(days + 1):
        per_day[(start + timedelta(days=i)).date().isoformat()] = 0

    for log, device in rows:
        entry = per_device.setdefault(
            device.id, {"device_id": device.id, "device_key": device.device_key, "usage_amount": 0}
        )
        entry["usage_amount"] += log.usage_amount
        day = log.timestamp.date().isoformat()
        if day in per_day:
            per_day[day] += log.usage_amount

    top_devices = sorted(per_device.values(), key=lambda d: d["usage_amount"], reverse=True)[:5]
    return {
        "total_usage": sum(log.usage_amount for log, _ in rows),
        "usage_count": len(rows),
        "top_devices": top_devices,
        "daily_usage": [{"date": d, "usage": u} for d, u in per_day.items()],
        "time_range": days,
    }
