from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from house_ledger import models
from house_ledger.amounts import ZERO, Amount
from house_ledger.config import SYSTEM_ADDRESS, OperationType, operation_sign_map


class AuditLog:
    """
    Append-only history of balance-changing operations.

    ``append`` joins the caller's transaction and never commits, so an entry is
    persisted exactly when the balance change it describes is.
    """

    def append(
        self,
        db: Session,
        address: str,
        operation_type: OperationType,
        amount: Optional[Decimal],
        balance_before: Decimal,
        balance_after: Optional[Decimal],
        reference_id: Optional[str] = None,
        admin_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> models.BalanceAuditLog:
        entry = models.BalanceAuditLog(
            address=address,
            operation_type=OperationType(operation_type).value,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            reference_id=reference_id,
            admin_id=admin_id,
            details=details,
        )
        db.add(entry)
        db.flush()
        return entry

    def sum_balances(self, db: Session) -> Decimal:
        """Sum, over every user address, the balance its latest entry left behind."""
        entry = models.BalanceAuditLog
        latest_ids = (
            db.query(func.max(entry.id))
            .filter(entry.address != SYSTEM_ADDRESS)
            .filter(entry.operation_type != OperationType.SYNC_CHECK.value)
            .group_by(entry.address)
        )
        total = (
            db.query(func.sum(entry.balance_after, type_=Amount()))
            .filter(entry.id.in_(latest_ids.scalar_subquery()))
            .scalar()
        )
        return total if total is not None else ZERO

    def history(self, db: Session, address: str, limit: int = 100) -> List[models.BalanceAuditLog]:
        entry = models.BalanceAuditLog
        return db.query(entry).filter(entry.address == address).order_by(entry.id.desc()).limit(limit).all()

    def has_entry(self, db: Session, address: str, operation_type: OperationType, reference_id: str) -> bool:
        entry = models.BalanceAuditLog
        found = (
            db.query(entry.id)
            .filter(entry.address == address)
            .filter(entry.operation_type == OperationType(operation_type).value)
            .filter(entry.reference_id == reference_id)
            .first()
        )
        return found is not None

    def rebuild_balance(self, db: Session, address: str) -> Decimal:
        """Replay the address's stream from zero."""
        entry = models.BalanceAuditLog
        balance = ZERO
        for row in db.query(entry).filter(entry.address == address).order_by(entry.id).all():
            operation = OperationType(row.operation_type)
            if operation == OperationType.RECONCILIATION:
                balance = row.balance_after
            elif operation in operation_sign_map:
                balance += operation_sign_map[operation] * row.amount
        return balance


audit_log = AuditLog()
