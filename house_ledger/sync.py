import asyncio
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional

from house_ledger.amounts import ZERO
from house_ledger.chain import ChainOracle
from house_ledger.config import DriftPolicy, OperationType, settings
from house_ledger.errors import ChainOracleError, LedgerError
from house_ledger.ledger import BalanceLedger
from house_ledger.logging_config import get_logger
from house_ledger.models import utcnow
from house_ledger.schemas import ReconciliationResult, SyncCheckResult

if TYPE_CHECKING:
    from house_ledger.reconciliation import ReconciliationEngine

logger = get_logger(__name__)


class SyncChecker:
    """
    Compare the ledger's aggregate balance with the escrow vault on chain.

    Every check leaves a ``sync_check`` audit entry, synchronized or not. Drift
    is logged at critical severity and then handed to ``drift_policy``; it is
    never corrected without an audited reconciliation.
    """

    def __init__(
        self,
        ledger: BalanceLedger,
        oracle: ChainOracle,
        vault_address: str | None = None,
        tolerance: Decimal | None = None,
        drift_policy: DriftPolicy | None = None,
        reconciler: Optional["ReconciliationEngine"] = None,
        admin_id: str | None = None,
    ):
        self.ledger = ledger
        self.oracle = oracle
        self.vault_address = vault_address or settings.vault_address
        self.tolerance = tolerance if tolerance is not None else settings.sync_tolerance
        self.drift_policy = DriftPolicy(drift_policy or settings.drift_policy)
        self.reconciler = reconciler
        self.admin_id = admin_id or settings.system_admin_id
        self.last_result: Optional[SyncCheckResult] = None

    def is_synchronized(self, discrepancy: Decimal) -> bool:
        return abs(discrepancy) < self.tolerance

    async def check_sync(self) -> SyncCheckResult:
        timestamp = utcnow()
        try:
            ledger_total = await asyncio.to_thread(self.ledger.ledger_total)
            audit_total = await asyncio.to_thread(self.ledger.audit_total)
        except LedgerError as exc:
            logger.error("[SYNC CHECK ERROR] Failed to total ledger balances: %s", exc)
            result = SyncCheckResult(
                synchronized=False, ledger_total=ZERO, timestamp=timestamp, error=f"ledger query failed: {exc}"
            )
            self.last_result = result
            return result

        if audit_total != ledger_total:
            logger.error(
                "[SYNC CHECK] Ledger table and audit log disagree ledger_total=%s audit_total=%s",
                ledger_total,
                audit_total,
            )

        try:
            vault_balance = await self.oracle.query_vault_balance(self.vault_address)
        except ChainOracleError as exc:
            logger.error("[SYNC CHECK ERROR] Failed to query vault balance: %s", exc)
            result = SyncCheckResult(
                synchronized=False,
                ledger_total=ledger_total,
                audit_total=audit_total,
                timestamp=timestamp,
                error=f"vault query failed: {exc}",
            )
        else:
            discrepancy = vault_balance - ledger_total
            result = SyncCheckResult(
                synchronized=self.is_synchronized(discrepancy),
                ledger_total=ledger_total,
                vault_balance=vault_balance,
                discrepancy=discrepancy,
                audit_total=audit_total,
                timestamp=timestamp,
            )

        await asyncio.to_thread(self._record, result)
        self.last_result = result

        if result.synchronized:
            logger.info(
                "[SYNC CHECK] Balances synchronized ledger_total=%s vault_balance=%s discrepancy=%s",
                result.ledger_total,
                result.vault_balance,
                result.discrepancy,
            )
        elif result.error is None:
            logger.critical(
                "[SYNC CHECK] Balance mismatch detected ledger_total=%s vault_balance=%s discrepancy=%s",
                result.ledger_total,
                result.vault_balance,
                result.discrepancy,
            )
            await self._escalate(result)
        return result

    def _record(self, result: SyncCheckResult):
        try:
            self.ledger.record_system_event(
                OperationType.SYNC_CHECK,
                amount=result.discrepancy,
                balance_before=result.ledger_total,
                balance_after=result.vault_balance,
                details={"synchronized": result.synchronized, "error": result.error},
            )
        except LedgerError as exc:
            logger.error("[SYNC LOG ERROR] Failed to record sync check: %s", exc)

    async def _escalate(self, result: SyncCheckResult) -> List[ReconciliationResult]:
        if self.drift_policy == DriftPolicy.ALERT or self.reconciler is None:
            return []
        dry_run = self.drift_policy == DriftPolicy.DRY_RUN
        logger.warning(
            "[SYNC CHECK] Escalating drift of %s with %s sweep", result.discrepancy, "dry-run" if dry_run else "live"
        )
        results = await self.reconciler.reconcile_all(self.admin_id, dry_run=dry_run)
        for item in results:
            logger.warning(
                "[SYNC CHECK] %s address=%s old=%s new=%s discrepancy=%s success=%s",
                "Would reconcile" if dry_run else "Reconciled",
                item.address,
                item.old_balance,
                item.new_balance,
                item.discrepancy,
                item.success,
            )
        return results
