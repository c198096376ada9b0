import asyncio
import csv
from decimal import Decimal
from io import StringIO
from typing import List, Tuple

from house_ledger.amounts import MAX_AMOUNT, UNIT, ZERO, validate_address
from house_ledger.chain import ChainOracle
from house_ledger.config import DEFAULT_ADMIN_ID, OperationType, settings
from house_ledger.errors import ChainOracleError, LedgerError, ValidationError
from house_ledger.ledger import BalanceLedger
from house_ledger.logging_config import get_logger
from house_ledger.models import utcnow
from house_ledger.schemas import ReconciliationResult


logger = get_logger(__name__)


class ReconciliationEngine:
    """
    Force off-chain balances to the chain's authoritative value.

    The chain is queried before any lock is taken; the overwrite and its
    ``reconciliation`` audit entry then commit together under the address lock.
    """

    def __init__(self, ledger: BalanceLedger, oracle: ChainOracle, tolerance: Decimal | None = None):
        self.ledger = ledger
        self.oracle = oracle
        self.tolerance = tolerance if tolerance is not None else settings.sync_tolerance

    async def reconcile_user(self, address: str, admin_id: str = DEFAULT_ADMIN_ID) -> ReconciliationResult:
        address = validate_address(address)
        timestamp = utcnow()
        try:
            chain_balance = await self.oracle.query_user_authoritative_balance(address)
            self._check_chain_balance(address, chain_balance)
        except (ChainOracleError, ValidationError) as exc:
            logger.error("[RECONCILIATION ERROR] Chain balance unavailable for %s: %s", address, exc)
            old_balance = await self._current_balance(address)
            return ReconciliationResult(
                address=address,
                old_balance=old_balance,
                new_balance=old_balance,
                discrepancy=ZERO,
                success=False,
                timestamp=timestamp,
                error=str(exc),
            )

        try:
            old_balance = await asyncio.to_thread(self._overwrite, address, chain_balance, admin_id)
        except LedgerError as exc:
            logger.error("[RECONCILIATION ERROR] Failed to overwrite balance for %s: %s", address, exc)
            old_balance = await self._current_balance(address)
            return ReconciliationResult(
                address=address,
                old_balance=old_balance,
                new_balance=old_balance,
                discrepancy=ZERO,
                success=False,
                timestamp=timestamp,
                error=str(exc),
            )

        discrepancy = chain_balance - old_balance
        logger.info(
            "[RECONCILIATION] Balance reconciled address=%s old_balance=%s new_balance=%s discrepancy=%s admin=%s",
            address,
            old_balance,
            chain_balance,
            discrepancy,
            admin_id,
        )
        return ReconciliationResult(
            address=address,
            old_balance=old_balance,
            new_balance=chain_balance,
            discrepancy=discrepancy,
            success=True,
            timestamp=timestamp,
        )

    async def reconcile_all(self, admin_id: str = DEFAULT_ADMIN_ID, dry_run: bool = False) -> List[ReconciliationResult]:
        """
        Check every balance record against the chain. Records within tolerance
        are skipped; one user's failure is reported and the sweep continues.
        """
        logger.info("[RECONCILIATION] Starting bulk reconciliation admin=%s dry_run=%s", admin_id, dry_run)
        records = await asyncio.to_thread(self.ledger.list_records)
        results: List[ReconciliationResult] = []
        for record in records:
            try:
                chain_balance = await self.oracle.query_user_authoritative_balance(record.address)
                self._check_chain_balance(record.address, chain_balance)
            except (ChainOracleError, ValidationError) as exc:
                logger.error("[RECONCILIATION ERROR] Failed to check user %s: %s", record.address, exc)
                results.append(ReconciliationResult(
                    address=record.address,
                    old_balance=record.balance,
                    new_balance=record.balance,
                    discrepancy=ZERO,
                    success=False,
                    timestamp=utcnow(),
                    dry_run=dry_run,
                    error=str(exc),
                ))
                continue

            discrepancy = chain_balance - record.balance
            if abs(discrepancy) < self.tolerance:
                continue
            logger.info(
                "[RECONCILIATION] Discrepancy found address=%s ledger_balance=%s chain_balance=%s discrepancy=%s",
                record.address,
                record.balance,
                chain_balance,
                discrepancy,
            )
            if dry_run:
                results.append(ReconciliationResult(
                    address=record.address,
                    old_balance=record.balance,
                    new_balance=chain_balance,
                    discrepancy=discrepancy,
                    success=True,
                    timestamp=utcnow(),
                    dry_run=True,
                ))
            else:
                results.append(await self.reconcile_user(record.address, admin_id))

        logger.info(
            "[RECONCILIATION] Completed checked=%s discrepancies=%s failures=%s",
            len(records),
            len(results),
            sum(1 for r in results if not r.success),
        )
        return results

    def _check_chain_balance(self, address: str, chain_balance: Decimal):
        if chain_balance < 0 or chain_balance > MAX_AMOUNT or chain_balance != chain_balance.quantize(UNIT):
            raise ValidationError(f"Chain reported an unusable balance {chain_balance} for {address}")

    def _overwrite(self, address: str, chain_balance: Decimal, admin_id: str) -> Decimal:
        def _once() -> Decimal:
            with self.ledger.locked_transaction(address, create=True) as (db, record):
                old_balance = record.balance
                record.balance = chain_balance
                self.ledger.audit.append(
                    db,
                    address,
                    OperationType.RECONCILIATION,
                    chain_balance - old_balance,
                    old_balance,
                    chain_balance,
                    admin_id=admin_id,
                    details={"source": "chain"},
                )
            return old_balance

        return self.ledger.retry_policy.call(_once)

    async def _current_balance(self, address: str) -> Decimal:
        try:
            return await asyncio.to_thread(self.ledger.get_balance, address)
        except LedgerError:
            return ZERO


def results_to_csv(results: List[ReconciliationResult]) -> Tuple[str, int]:
    """
    Render reconciliation results as CSV text plus the number of mismatches.
    """
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["address", "oldBalance", "newBalance", "discrepancy", "success", "dryRun", "error"])
    for result in results:
        writer.writerow((
            result.address,
            result.old_balance,
            result.new_balance,
            result.discrepancy,
            result.success,
            result.dry_run,
            result.error or "",
        ))
    return output.getvalue(), len(results)
