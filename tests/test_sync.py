import asyncio
import logging
from decimal import Decimal

import pytest

from house_ledger import models
from house_ledger.config import SYSTEM_ADDRESS, DriftPolicy
from house_ledger.errors import ChainOracleError
from house_ledger.reconciliation import ReconciliationEngine
from house_ledger.sync import SyncChecker


def _sync_entries(session_factory):
    with session_factory() as db:
        return (
            db.query(models.BalanceAuditLog)
            .filter(models.BalanceAuditLog.operation_type == "sync_check")
            .order_by(models.BalanceAuditLog.id)
            .all()
        )


@pytest.fixture
def funded(ledger):
    ledger.deposit("0xaaa", "60")
    ledger.deposit("0xbbb", "40")
    return ledger


def test_exact_match_is_synchronized(funded, oracle, session_factory):
    oracle.vault_balance = Decimal("100.00000000")

    result = asyncio.run(SyncChecker(funded, oracle).check_sync())

    assert result.synchronized
    assert result.ledger_total == Decimal("100")
    assert result.discrepancy == Decimal(0)
    assert result.audit_total == result.ledger_total
    entries = _sync_entries(session_factory)
    assert len(entries) == 1
    assert entries[0].address == SYSTEM_ADDRESS
    assert entries[0].balance_before == Decimal("100")
    assert entries[0].balance_after == Decimal("100")
    assert entries[0].details == {"synchronized": True, "error": None}


@pytest.mark.parametrize(
    "vault, tolerance, synchronized",
    [
        ("100.00000001", None, False),
        ("99.99999999", None, False),
        ("100.00000002", Decimal("0.00000003"), True),
        ("100.01", None, False),
    ],
)
def test_tolerance(funded, oracle, vault, tolerance, synchronized):
    oracle.vault_balance = Decimal(vault)

    result = asyncio.run(SyncChecker(funded, oracle, tolerance=tolerance).check_sync())

    assert result.synchronized is synchronized
    assert result.discrepancy == Decimal(vault) - Decimal("100")


def test_drift_is_logged_and_recorded(funded, oracle, session_factory, caplog):
    oracle.vault_balance = Decimal("100.01")
    caplog.set_level(logging.CRITICAL)

    checker = SyncChecker(funded, oracle)
    result = asyncio.run(checker.check_sync())

    assert not result.synchronized
    assert result.discrepancy == Decimal("0.01")
    assert checker.last_result is result
    assert any("Balance mismatch" in r.getMessage() for r in caplog.records if r.levelno == logging.CRITICAL)
    entry = _sync_entries(session_factory)[-1]
    assert entry.amount == Decimal("0.01")
    assert entry.details["synchronized"] is False


def test_vault_failure_is_not_zero(funded, oracle, session_factory):
    oracle.vault_error = ChainOracleError("access node timeout", transient=True)

    result = asyncio.run(SyncChecker(funded, oracle).check_sync())

    assert not result.synchronized
    assert result.vault_balance is None
    assert result.discrepancy is None
    assert "access node timeout" in result.error
    entry = _sync_entries(session_factory)[-1]
    assert entry.amount is None
    assert entry.balance_after is None
    assert entry.balance_before == Decimal("100")


def test_sync_check_does_not_touch_balances(funded, oracle):
    oracle.vault_balance = Decimal("250")
    asyncio.run(SyncChecker(funded, oracle).check_sync())

    assert funded.get_balance("0xaaa") == Decimal("60")
    assert funded.ledger_total() == Decimal("100")


def test_dry_run_policy_reports_without_writing(funded, oracle):
    oracle.vault_balance = Decimal("105")
    oracle.user_balances = {"0xaaa": Decimal("65"), "0xbbb": Decimal("40")}
    reconciler = ReconciliationEngine(funded, oracle)
    checker = SyncChecker(funded, oracle, drift_policy=DriftPolicy.DRY_RUN, reconciler=reconciler)

    asyncio.run(checker.check_sync())

    assert funded.get_balance("0xaaa") == Decimal("60")


def test_reconcile_policy_corrects_drifted_users(funded, oracle, session_factory):
    oracle.vault_balance = Decimal("105")
    oracle.user_balances = {"0xaaa": Decimal("65"), "0xbbb": Decimal("40")}
    reconciler = ReconciliationEngine(funded, oracle)
    checker = SyncChecker(funded, oracle, drift_policy=DriftPolicy.RECONCILE, reconciler=reconciler)

    asyncio.run(checker.check_sync())

    assert funded.get_balance("0xaaa") == Decimal("65")
    assert funded.get_balance("0xbbb") == Decimal("40")
    entry = funded.history("0xaaa", limit=1)[0]
    assert entry.operation_type == "reconciliation"
    assert entry.admin_id == "SYSTEM"
