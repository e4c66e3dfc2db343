"""Settlement engine: token redemption and metered usage debits.

Every balance mutation for a device runs while holding that device's lock
and inside a single transaction, and the ledger applies the delta with a
conditional UPDATE. Either guard alone prevents lost updates in-process;
together they also hold when several processes share the database.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from watermeter.database import run_in_transaction
from watermeter.models.device import Device
from watermeter.models.ledger import Token, UsageLog
from watermeter.services import ledger, registry, token_store
from watermeter.services.errors import DeviceNotFound, InsufficientBalance, TokenNotFound, ValidationFailed
from watermeter.services.locks import KeyedLocks, device_locks
from watermeter.services.token_store import Redemption
from watermeter.utils.money import to_minor

logger = logging.getLogger(__name__)


@dataclass
class DeviceView:
    id: str
    device_key: str
    user_id: str
    is_active: bool


@dataclass
class BalanceView:
    device_id: str
    balance: int
    last_token: str


@dataclass
class UsageResult:
    device_id: str
    can_use: bool
    usage_amount: int
    remaining_balance: int
    usage_log_id: str | None = None


@dataclass
class TokenView:
    id: str
    device_id: str
    device_key: str
    token: str
    amount: int
    status: str
    used_at: datetime | None
    created_at: datetime


class SettlementEngine:
    """Money-moving operations exposed to devices and operators.

    The storage engine is injected so tests can hand in a throwaway database.
    """

    def __init__(
        self,
        engine: Engine,
        locks: KeyedLocks | None = None,
        max_retries: int | None = None,
    ):
        self._engine = engine
        self._locks = locks if locks is not None else device_locks
        self._max_retries = max_retries

    def _tx(self, fn):
        return run_in_transaction(self._engine, fn, self._max_retries)

    # --- Devices ---

    def authenticate(self, device_key: str) -> DeviceView:
        """Resolve an active device and record that it was seen."""

        def apply(session: Session) -> DeviceView:
            device = registry.find_active_device_by_key(device_key, session)
            registry.touch_last_seen(device, session)
            return DeviceView(device.id, device.device_key, device.user_id, device.is_active)

        return self._tx(apply)

    def heartbeat(self, device_key: str) -> None:
        def apply(session: Session) -> None:
            device = registry.find_device_by_key(device_key, session)
            if device:
                registry.touch_last_seen(device, session)
            else:
                logger.warning("Heartbeat from unknown device %s", device_key)

        self._tx(apply)

    # --- Balance ---

    def check_balance(self, device_key: str) -> BalanceView:
        """Read-only: a device that never settled reads as zero."""

        def apply(session: Session) -> BalanceView:
            device = registry.find_active_device_by_key(device_key, session)
            balance = ledger.read(device.id, session)
            if balance is None:
                return BalanceView(device.id, 0, "")
            return BalanceView(device.id, balance.balance, balance.last_token)

        return self._tx(apply)

    # --- Tokens ---

    def issue_token(self, device_id: str, amount) -> TokenView:
        """Issue a token worth ``amount`` (a decimal in major units)."""
        units = to_minor(amount)

        def apply(session: Session) -> TokenView:
            token = token_store.issue(device_id, units, session)
            view = _token_view(token, session)
            logger.info("Issued token %s for device %s amount=%d", token.id, device_id, units)
            return view

        return self._tx(apply)

    def redeem_token(self, device_key: str, token: str) -> Redemption:
        if not device_key:
            raise ValidationFailed("Device key is required")
        if not token:
            raise ValidationFailed("Token is required")

        # The token names its device; that decides which lock to take
        device_id = self._tx(lambda session: _token_device_id(token, session))

        with self._locks.hold(device_id):
            redemption = self._tx(
                lambda session: token_store.redeem(token, device_key, session)
            )

        logger.info(
            "Token %s redeemed on device %s: +%d, balance=%d",
            redemption.token_id, redemption.device_id, redemption.amount, redemption.balance,
        )
        return redemption

    # --- Usage ---

    def log_usage(self, device_key: str, usage_amount) -> UsageResult:
        """Debit ``usage_amount`` and append a usage log, or report that it cannot be used.

        Insufficient balance is a normal outcome: nothing is written and the
        result carries the balance that is left.
        """
        device = self._tx(lambda session: _device_view(device_key, session))
        units = to_minor(usage_amount)

        def apply(session: Session) -> UsageResult:
            # Re-check under the lock: the device may have been disabled meanwhile
            current = registry.find_active_device_by_key(device_key, session)
            if current.id != device.id:
                # The key moved to another device; its lock is not the one held
                raise DeviceNotFound()
            try:
                balance = ledger.debit(current.id, units, session)
            except InsufficientBalance as e:
                return UsageResult(current.id, False, units, e.balance)

            usage = UsageLog(device_id=current.id, usage_amount=units)
            session.add(usage)
            session.flush()
            return UsageResult(current.id, True, units, balance.balance, usage.id)

        with self._locks.hold(device.id):
            result = self._tx(apply)

        if result.can_use:
            logger.info(
                "Usage on device %s: -%d, balance=%d",
                device.id, units, result.remaining_balance,
            )
        else:
            logger.info(
                "Usage rejected on device %s: requested %d, balance=%d",
                device.id, units, result.remaining_balance,
            )
        return result


def _device_view(device_key: str, session: Session) -> DeviceView:
    device = registry.find_active_device_by_key(device_key, session)
    return DeviceView(device.id, device.device_key, device.user_id, device.is_active)


def _token_device_id(token: str, session: Session) -> str:
    device_id = session.exec(select(Token.device_id).where(Token.token == token)).first()
    if device_id is None:
        raise TokenNotFound()
    return device_id


def _token_view(token: Token, session: Session) -> TokenView:
    device = session.get(Device, token.device_id)
    return TokenView(
        id=token.id,
        device_id=token.device_id,
        device_key=device.device_key if device else "",
        token=token.token,
        amount=token.amount,
        status=token.status,
        used_at=token.used_at,
        created_at=token.created_at,
    )
