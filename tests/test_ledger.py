import threading
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from house_ledger import models
from house_ledger.amounts import validate_amount
from house_ledger.audit import AuditLog
from house_ledger.config import SYSTEM_ADDRESS, OperationType
from house_ledger.database import make_engine, make_session_factory
from house_ledger.errors import InsufficientBalanceError, TransientStoreError, UserNotFoundError, ValidationError
from house_ledger.ledger import AddressLocks, BalanceLedger
from house_ledger.retry import RetryPolicy


def _entries(session_factory, address):
    with session_factory() as db:
        return (
            db.query(models.BalanceAuditLog)
            .filter(models.BalanceAuditLog.address == address)
            .order_by(models.BalanceAuditLog.id)
            .all()
        )


def test_deposit_creates_record_with_audit_entry(ledger, session_factory):
    new_balance = ledger.deposit("0xabc", Decimal("10.0"), "tx-1")

    assert new_balance == Decimal("10.0")
    assert ledger.get_balance("0xabc") == Decimal("10.0")
    entries = _entries(session_factory, "0xabc")
    assert len(entries) == 1
    assert entries[0].operation_type == "deposit"
    assert entries[0].balance_before == Decimal(0)
    assert entries[0].balance_after == Decimal("10.0")
    assert entries[0].reference_id == "tx-1"


def test_amounts_are_exact(ledger):
    ledger.deposit("0xabc", "0.1")
    ledger.deposit("0xabc", 0.2)
    assert ledger.get_balance("0xabc") == Decimal("0.3")

    ledger.deposit("0xabc", "0.00000001")
    assert ledger.get_balance("0xabc") == Decimal("0.30000001")


def test_debit_over_balance_leaves_balance_and_audit_untouched(ledger, session_factory):
    ledger.deposit("0xabc", "10.0")

    with pytest.raises(InsufficientBalanceError) as excinfo:
        ledger.debit_for_bet("0xabc", "15.0", "bet-1")

    assert excinfo.value.shortfall == Decimal("5.0")
    assert ledger.get_balance("0xabc") == Decimal("10.0")
    assert len(_entries(session_factory, "0xabc")) == 1


def test_withdraw_unknown_address(ledger):
    with pytest.raises(UserNotFoundError):
        ledger.withdraw("0xmissing", "1")
    with pytest.raises(UserNotFoundError):
        ledger.debit_for_bet("0xmissing", "1")
    assert ledger.get_record("0xmissing") is None


def test_payout_creates_missing_record(ledger, session_factory):
    assert ledger.credit_payout("0xnew", "5.0", "bet42") == Decimal("5.0")

    entries = _entries(session_factory, "0xnew")
    assert [e.operation_type for e in entries] == ["bet_won"]
    assert entries[0].balance_before == Decimal(0)
    assert entries[0].reference_id == "bet42"


def test_bet_lifecycle(ledger, session_factory):
    ledger.deposit("0xabc", "100")
    assert ledger.debit_for_bet("0xabc", "30", "bet-1") == Decimal("70")
    assert ledger.credit_payout("0xabc", "60", "bet-1") == Decimal("130")
    assert ledger.withdraw("0xabc", "20") == Decimal("110")
    assert ledger.record_bet_lost("0xabc", "10", "bet-2") == Decimal("110")

    entries = _entries(session_factory, "0xabc")
    lost = entries[-1]
    assert lost.operation_type == "bet_lost"
    assert lost.amount == Decimal("10")
    assert lost.balance_before == lost.balance_after == Decimal("110")

    with session_factory() as db:
        rebuilt = ledger.audit.rebuild_balance(db, "0xabc")
    assert rebuilt == ledger.get_balance("0xabc")


@pytest.mark.parametrize(
    "amount",
    ["0", "-1", "1.000000001", "abc", float("nan"), Decimal("Infinity"), True],
)
def test_invalid_amounts_rejected(ledger, amount):
    with pytest.raises(ValidationError):
        ledger.deposit("0xabc", amount)
    assert ledger.get_record("0xabc") is None


@pytest.mark.parametrize("address", ["", "abc", "0x", "0xab-cd", "0x" + "a" * 65, "0xabc\n", " 0xabc"])
def test_invalid_addresses_rejected(ledger, address):
    with pytest.raises(ValidationError):
        ledger.deposit(address, "1")


def test_validate_amount_accepts_smallest_unit():
    assert validate_amount("0.00000001") == Decimal("0.00000001")


def test_audit_total_matches_ledger_total(ledger):
    ledger.deposit("0xaaa", "50")
    ledger.deposit("0xbbb", "25.5")
    ledger.debit_for_bet("0xaaa", "10", "bet-1")
    ledger.credit_payout("0xccc", "3", "bet-2")
    ledger.record_system_event(OperationType.SYNC_CHECK, Decimal("1"), Decimal("68.5"), Decimal("69.5"))

    assert ledger.ledger_total() == Decimal("68.5")
    assert ledger.audit_total() == ledger.ledger_total()


def test_system_event_recorded_under_sentinel(ledger, session_factory):
    entry_id = ledger.record_system_event(
        OperationType.SYNC_CHECK, None, Decimal("10"), None, details={"synchronized": False, "error": "down"}
    )
    with session_factory() as db:
        entry = db.get(models.BalanceAuditLog, entry_id)
    assert entry.address == SYSTEM_ADDRESS
    assert entry.amount is None
    assert entry.balance_after is None
    assert entry.details["error"] == "down"


def test_audit_log_rejects_updates(ledger, session_factory):
    ledger.deposit("0xabc", "10")
    with session_factory() as db:
        entry = db.query(models.BalanceAuditLog).first()
        entry.reference_id = "rewritten"
        with pytest.raises(ValueError):
            db.commit()


def test_history_is_newest_first(ledger):
    ledger.deposit("0xabc", "10", "tx-1")
    ledger.withdraw("0xabc", "4", "tx-2")

    history = ledger.history("0xabc", limit=1)
    assert len(history) == 1
    assert history[0].reference_id == "tx-2"


def test_concurrent_debits_never_overdraw(ledger):
    ledger.deposit("0xabc", "100")
    outcomes = []

    def debit(i):
        try:
            ledger.debit_for_bet("0xabc", "7", f"bet-{i}")
            return "ok"
        except InsufficientBalanceError:
            return "insufficient"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(debit, range(20)))

    assert outcomes.count("ok") == 14
    assert outcomes.count("insufficient") == 6
    assert ledger.get_balance("0xabc") == Decimal("2")
    assert ledger.audit_total() == ledger.ledger_total() == Decimal("2")
    assert len(ledger.locks) == 0


def test_transient_store_failure_is_retried(ledger, monkeypatch):
    ledger.deposit("0xabc", "10")
    original = ledger._apply_once
    calls = {"count": 0}

    def flaky(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise TransientStoreError("connection reset")
        return original(*args, **kwargs)

    monkeypatch.setattr(ledger, "_apply_once", flaky)

    assert ledger.withdraw("0xabc", "4") == Decimal("6")
    assert calls["count"] == 2


def test_address_lock_times_out():
    locks = AddressLocks()
    with locks.hold("0xabc", timeout=1):
        with pytest.raises(TransientStoreError):
            with locks.hold("0xabc", timeout=0.01):
                pass
        # other addresses are independent
        with locks.hold("0xdef", timeout=0.01):
            assert len(locks) == 2
    assert len(locks) == 0


def test_lock_is_released_after_failure(ledger):
    ledger.deposit("0xabc", "1")
    with pytest.raises(InsufficientBalanceError):
        ledger.withdraw("0xabc", "2")

    done = threading.Event()

    def withdraw():
        ledger.withdraw("0xabc", "1")
        done.set()

    worker = threading.Thread(target=withdraw)
    worker.start()
    worker.join(timeout=5)
    assert done.is_set()
    assert ledger.get_balance("0xabc") == Decimal(0)


def test_referenced_operation_is_applied_once(ledger, session_factory):
    assert ledger.apply(OperationType.DEPOSIT, "0xabc", "10", "tx-1") == (Decimal("10"), True)
    assert ledger.deposit("0xabc", "10", "tx-1") == Decimal("10")
    assert ledger.apply(OperationType.WITHDRAWAL, "0xabc", "4", "tx-2") == (Decimal("6"), True)
    assert ledger.apply(OperationType.WITHDRAWAL, "0xabc", "4", "tx-2") == (Decimal("6"), False)
    # a replay is recognised even once the balance could no longer cover it
    assert ledger.withdraw("0xabc", "6", "tx-3") == Decimal("0")
    assert ledger.withdraw("0xabc", "4", "tx-2") == Decimal("0")

    ops = [(e.operation_type, e.reference_id) for e in _entries(session_factory, "0xabc")]
    assert ops == [("deposit", "tx-1"), ("withdrawal", "tx-2"), ("withdrawal", "tx-3")]


def test_unreferenced_operations_are_never_deduplicated(ledger):
    ledger.deposit("0xabc", "5")
    ledger.deposit("0xabc", "5")
    assert ledger.get_balance("0xabc") == Decimal("10")


def test_concurrent_redeliveries_credit_once(ledger):
    def deliver(_):
        return ledger.apply(OperationType.BET_WON, "0xabc", "8", "bet-1")[1]

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(deliver, range(10)))

    assert outcomes.count(True) == 1
    assert ledger.get_balance("0xabc") == Decimal("8")
    assert ledger.audit_total() == Decimal("8")


class _PausingAudit(AuditLog):
    """Keeps the writer's transaction open for a moment after its entry is flushed."""

    def __init__(self):
        self.written = threading.Event()

    def append(self, db, *args, **kwargs):
        entry = super().append(db, *args, **kwargs)
        self.written.set()
        time.sleep(0.3)
        return entry


def test_ledgers_sharing_a_sqlite_file_cannot_overdraw(engine):
    # two ledgers with their own engines and locks, as two worker processes would have
    other_engine = make_engine(str(engine.url))
    policy = RetryPolicy(backoff_seconds=0, jitter=False, sleep=lambda _: None)
    pausing = _PausingAudit()
    first = BalanceLedger(make_session_factory(engine), audit=pausing, retry_policy=policy, locks=AddressLocks())
    second = BalanceLedger(make_session_factory(other_engine), retry_policy=policy, locks=AddressLocks())
    second.deposit("0xabc", "10")

    try:
        with ThreadPoolExecutor(max_workers=1) as pool:
            pending = pool.submit(first.debit_for_bet, "0xabc", "7", "bet-1")
            assert pausing.written.wait(timeout=5)
            with pytest.raises(InsufficientBalanceError):
                second.debit_for_bet("0xabc", "7", "bet-2")
            assert pending.result() == Decimal("3")
    finally:
        other_engine.dispose()

    assert first.get_balance("0xabc") == Decimal("3")
    assert first.audit_total() == Decimal("3")
