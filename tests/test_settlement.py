"""Settlement core: token redemption, usage debits and their concurrency guarantees."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlmodel import Session, func, select

from watermeter.models.ledger import TOKEN_USED, Balance, Token, UsageLog
from watermeter.services.errors import (
    DeviceInactive,
    DeviceMismatch,
    DeviceNotFound,
    InvalidAmount,
    TokenAlreadyUsed,
    TokenNotFound,
    ValidationFailed,
)
from watermeter.services.locks import KeyedLocks


def _count(db, model) -> int:
    with Session(db) as session:
        return session.exec(select(func.count()).select_from(model)).one()


def _balance(db, device_id: str) -> int | None:
    with Session(db) as session:
        row = session.exec(select(Balance).where(Balance.device_id == device_id)).first()
        return row.balance if row else None


class TestTokenLifecycle:
    def test_issue_redeem_and_spend(self, db, settlement, make_device):
        device = make_device("D1")

        token = settlement.issue_token(device.id, 50)
        assert token.amount == 5000
        assert token.status == "unused"
        assert len(token.token) == 20 and token.token.isdigit()

        redemption = settlement.redeem_token("D1", token.token)
        assert redemption.amount == 5000
        assert redemption.balance == 5000
        assert settlement.check_balance("D1").last_token == token.token

        with pytest.raises(TokenAlreadyUsed):
            settlement.redeem_token("D1", token.token)
        assert _balance(db, device.id) == 5000

        used = settlement.log_usage("D1", 20)
        assert used.can_use is True
        assert used.remaining_balance == 3000
        assert _count(db, UsageLog) == 1

        refused = settlement.log_usage("D1", 1000)
        assert refused.can_use is False
        assert refused.remaining_balance == 3000
        assert refused.usage_log_id is None
        assert _balance(db, device.id) == 3000
        assert _count(db, UsageLog) == 1

    @pytest.mark.parametrize("amount", [0, -5, "1.234", "ten", "1e30", "1e17"])
    def test_issue_rejects_bad_amounts(self, db, settlement, make_device, amount):
        device = make_device("D1")
        with pytest.raises(InvalidAmount):
            settlement.issue_token(device.id, amount)
        assert _count(db, Token) == 0

    def test_issue_for_missing_device(self, db, settlement):
        with pytest.raises(DeviceNotFound):
            settlement.issue_token("dev_missing", 10)
        assert _count(db, Token) == 0

    def test_tokens_are_unique(self, settlement, make_device):
        device = make_device("D1")
        tokens = {settlement.issue_token(device.id, 1).token for _ in range(25)}
        assert len(tokens) == 25

    def test_redeem_on_other_device_is_rejected(self, db, settlement, make_device):
        d1 = make_device("D1")
        make_device("D2")
        token = settlement.issue_token(d1.id, 10)

        with pytest.raises(DeviceMismatch):
            settlement.redeem_token("D2", token.token)

        with Session(db) as session:
            assert session.get(Token, token.id).status == "unused"
        assert _balance(db, d1.id) is None

    def test_redeem_unknown_token(self, settlement, make_device):
        make_device("D1")
        with pytest.raises(TokenNotFound):
            settlement.redeem_token("D1", "99999999999999999999")

    def test_redeem_requires_inputs(self, settlement):
        with pytest.raises(ValidationFailed):
            settlement.redeem_token("D1", "")
        with pytest.raises(ValidationFailed):
            settlement.redeem_token("", "123")

    def test_inactive_device_cannot_redeem_or_spend(self, db, settlement, make_device):
        device = make_device("D1", is_active=False)
        token = settlement.issue_token(device.id, 10)

        with pytest.raises(DeviceInactive):
            settlement.redeem_token("D1", token.token)
        with pytest.raises(DeviceInactive):
            settlement.log_usage("D1", 1)
        with pytest.raises(DeviceInactive):
            settlement.check_balance("D1")

        with Session(db) as session:
            assert session.get(Token, token.id).status == "unused"

    def test_failed_credit_rolls_back_the_flip(self, db, settlement, make_device, monkeypatch):
        from watermeter.services import ledger

        device = make_device("D1")
        token = settlement.issue_token(device.id, 10)

        def broken_credit(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(ledger, "credit", broken_credit)
        with pytest.raises(RuntimeError):
            settlement.redeem_token("D1", token.token)

        with Session(db) as session:
            row = session.get(Token, token.id)
            assert row.status == "unused"
            assert row.used_at is None
        assert _balance(db, device.id) is None

        monkeypatch.undo()
        assert settlement.redeem_token("D1", token.token).balance == 1000

    def test_credit_never_overflows_the_balance_column(self, db, make_device):
        from watermeter.services import ledger

        device = make_device("D1")
        with Session(db) as session:
            session.add(Balance(device_id=device.id, balance=ledger.MAX_BALANCE - 10))
            session.commit()

        with Session(db) as session:
            with pytest.raises(InvalidAmount):
                ledger.credit(device.id, 100, "tok", session)
            session.rollback()
        assert _balance(db, device.id) == ledger.MAX_BALANCE - 10


class TestBalanceReads:
    def test_check_balance_without_row_creates_nothing(self, db, settlement, make_device):
        device = make_device("D1")
        view = settlement.check_balance("D1")
        assert view.balance == 0
        assert view.last_token == ""
        assert _balance(db, device.id) is None

    def test_refused_usage_without_row_creates_nothing(self, db, settlement, make_device):
        device = make_device("D1")
        result = settlement.log_usage("D1", 5)
        assert result.can_use is False
        assert result.remaining_balance == 0
        assert _balance(db, device.id) is None
        assert _count(db, UsageLog) == 0

    def test_unknown_device(self, settlement):
        with pytest.raises(DeviceNotFound):
            settlement.check_balance("nope")
        with pytest.raises(DeviceNotFound):
            settlement.log_usage("nope", 1)

    def test_usage_amount_is_validated_before_writing(self, db, settlement, make_device):
        device = make_device("D1")
        settlement.redeem_token("D1", settlement.issue_token(device.id, 10).token)
        for bad in (0, -1, None, "x"):
            with pytest.raises(InvalidAmount):
                settlement.log_usage("D1", bad)
        assert _balance(db, device.id) == 1000
        assert _count(db, UsageLog) == 0

    def test_fractional_usage(self, db, settlement, make_device):
        device = make_device("D1")
        settlement.redeem_token("D1", settlement.issue_token(device.id, "10.50").token)
        result = settlement.log_usage("D1", "0.25")
        assert result.remaining_balance == 1025

    def test_authenticate_records_last_seen(self, db, settlement, make_device):
        from watermeter.models.device import Device

        device = make_device("D1")
        view = settlement.authenticate("D1")
        assert view.id == device.id
        with Session(db) as session:
            assert session.get(Device, device.id).last_seen is not None

    def test_heartbeat_from_unknown_device_is_ignored(self, settlement):
        settlement.heartbeat("ghost")

    def test_usage_refused_when_key_moves_to_another_device(self, db, settlement, make_device, monkeypatch):
        from watermeter.services import settlement as settlement_module
        from watermeter.services.settlement import DeviceView

        device = make_device("D1")
        settlement.redeem_token("D1", settlement.issue_token(device.id, 10).token)

        # The id resolved before locking no longer owns the key
        monkeypatch.setattr(
            settlement_module,
            "_device_view",
            lambda key, session: DeviceView("dev_stale", key, device.user_id, True),
        )
        with pytest.raises(DeviceNotFound):
            settlement.log_usage("D1", 1)
        assert _balance(db, device.id) == 1000
        assert _count(db, UsageLog) == 0


class TestConcurrency:
    def test_parallel_usage_never_overdraws(self, db, settlement, make_device):
        device = make_device("D1")
        settlement.redeem_token("D1", settlement.issue_token(device.id, 10).token)

        # 40 debits of 0.50 against 10.00: exactly 20 can succeed
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: settlement.log_usage("D1", "0.50"), range(40)))

        applied = [r for r in results if r.can_use]
        assert len(applied) == 20
        assert _balance(db, device.id) == 0
        assert _count(db, UsageLog) == 20
        assert all(r.remaining_balance >= 0 for r in results)

    def test_balance_equals_sum_of_applied_deltas(self, db, settlement, make_device):
        device = make_device("D1")
        tokens = [settlement.issue_token(device.id, 5).token for _ in range(10)]

        def redeem(token):
            settlement.redeem_token("D1", token)
            return 500

        def spend(_):
            result = settlement.log_usage("D1", 1)
            return -result.usage_amount if result.can_use else 0

        with ThreadPoolExecutor(max_workers=8) as pool:
            credits = pool.map(redeem, tokens)
            debits = pool.map(spend, range(20))
            deltas = list(credits) + list(debits)

        assert _balance(db, device.id) == sum(deltas)
        assert _balance(db, device.id) >= 0

    def test_token_redeems_exactly_once(self, db, settlement, make_device):
        device = make_device("D1")
        token = settlement.issue_token(device.id, 25).token
        barrier = threading.Barrier(6)

        def attempt(_):
            barrier.wait()
            try:
                settlement.redeem_token("D1", token)
                return "ok"
            except TokenAlreadyUsed:
                return "used"

        with ThreadPoolExecutor(max_workers=6) as pool:
            outcomes = list(pool.map(attempt, range(6)))

        assert outcomes.count("ok") == 1
        assert outcomes.count("used") == 5
        assert _balance(db, device.id) == 2500
        with Session(db) as session:
            row = session.exec(select(Token).where(Token.token == token)).one()
            assert row.status == TOKEN_USED
            assert row.used_at is not None


class TestKeyedLocks:
    def test_same_key_is_exclusive(self):
        locks = KeyedLocks()
        inside = 0
        peak = 0
        guard = threading.Lock()

        def work(_):
            nonlocal inside, peak
            with locks.hold("D1"):
                with guard:
                    inside += 1
                    peak = max(peak, inside)
                threading.Event().wait(0.005)
                with guard:
                    inside -= 1

        with ThreadPoolExecutor(max_workers=6) as pool:
            list(pool.map(work, range(24)))
        assert peak == 1

    def test_different_keys_do_not_block(self):
        locks = KeyedLocks()
        with locks.hold("D1"):
            done = threading.Event()

            def other():
                with locks.hold("D2"):
                    done.set()

            t = threading.Thread(target=other)
            t.start()
            assert done.wait(timeout=2)
            t.join()

    def test_idle_locks_are_dropped(self):
        locks = KeyedLocks()
        with locks.hold("D1"):
            assert len(locks) == 1
        assert len(locks) == 0


class TestUsageStats:
    def test_first_partial_day_is_bucketed(self, db, owner, make_device):
        from datetime import timedelta

        from watermeter.services import access, reporting
        from watermeter.utils.dates import utcnow

        device = make_device("D1")
        with Session(db) as session:
            # Just inside the window, on the oldest calendar day it covers
            session.add(UsageLog(
                device_id=device.id,
                usage_amount=700,
                timestamp=utcnow() - timedelta(days=30) + timedelta(minutes=5),
            ))
            session.add(UsageLog(device_id=device.id, usage_amount=300))
            session.commit()

        with Session(db) as session:
            stats = reporting.usage_stats(owner.id, access.ADMIN, session, days=30)

        assert stats["total_usage"] == 1000
        assert len(stats["daily_usage"]) == 31
        assert sum(day["usage"] for day in stats["daily_usage"]) == stats["total_usage"]
