import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy import func, text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from house_ledger import models
from house_ledger.amounts import ZERO, Amount, validate_address, validate_amount
from house_ledger.audit import AuditLog, audit_log
from house_ledger.config import SYSTEM_ADDRESS, OperationType, operation_sign_map, settings
from house_ledger.errors import InsufficientBalanceError, TransientStoreError, UserNotFoundError
from house_ledger.logging_config import get_logger
from house_ledger.retry import RetryPolicy

logger = get_logger(__name__)

# operations that open a record for an address seen for the first time
CREATING_OPERATIONS = frozenset({OperationType.DEPOSIT, OperationType.BET_WON})


class AddressLocks:
    """
    Process-wide exclusive locks keyed by address.

    Entries are reference counted and dropped once no caller holds or waits on
    them, so the registry only grows with the number of addresses in flight.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, address: str, timeout: float) -> Iterator[None]:
        with self._guard:
            slot = self._locks.setdefault(address, [threading.Lock(), 0])
            slot[1] += 1
        try:
            if not slot[0].acquire(timeout=timeout):
                raise TransientStoreError(f"Timed out waiting for balance lock on {address}")
            try:
                yield
            finally:
                slot[0].release()
        finally:
            with self._guard:
                slot[1] -= 1
                if slot[1] == 0:
                    self._locks.pop(address, None)


def _is_transient(exc: DBAPIError) -> bool:
    # IntegrityError here is a lost race to create the same record; a retry sees the winner's row.
    return exc.connection_invalidated or isinstance(exc, (OperationalError, IntegrityError))


class BalanceLedger:
    """
    The single writer of off-chain balances.

    Every mutation runs as one transaction under the address's exclusive lock:
    read the record, check it, write the new balance and append exactly one
    audit entry. Operations on different addresses never share a lock.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        audit: AuditLog | None = None,
        retry_policy: RetryPolicy | None = None,
        locks: AddressLocks | None = None,
        timeout_seconds: float | None = None,
    ):
        self.session_factory = session_factory
        self.audit = audit or audit_log
        self.retry_policy = retry_policy or RetryPolicy()
        self.locks = locks or AddressLocks()
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.transaction_timeout_seconds

    def deposit(self, address: str, amount, reference: Optional[str] = None) -> Decimal:
        return self.apply(OperationType.DEPOSIT, address, amount, reference)[0]

    def withdraw(self, address: str, amount, reference: Optional[str] = None) -> Decimal:
        return self.apply(OperationType.WITHDRAWAL, address, amount, reference)[0]

    def debit_for_bet(self, address: str, amount, bet_reference: Optional[str] = None) -> Decimal:
        """
        Take a stake off the balance. On-chain bet registration is a separate,
        later step and is not rolled into this transaction.
        """
        return self.apply(OperationType.BET_PLACED, address, amount, bet_reference)[0]

    def credit_payout(self, address: str, amount, bet_reference: Optional[str] = None) -> Decimal:
        return self.apply(OperationType.BET_WON, address, amount, bet_reference)[0]

    def record_bet_lost(self, address: str, amount, bet_reference: Optional[str] = None) -> Decimal:
        """Audit a settled losing bet. The stake was already debited, so the balance is unchanged."""
        return self.apply(OperationType.BET_LOST, address, amount, bet_reference)[0]

    def apply(
        self, operation: OperationType, address: str, amount, reference: Optional[str] = None
    ) -> Tuple[Decimal, bool]:
        """
        Apply one balance operation and return ``(balance, applied)``.

        An operation carrying a reference is applied at most once per address
        and operation type. When the audit log already holds the same operation
        and reference, the call changes nothing and returns the current balance
        with ``applied`` False. The check runs under the address lock, so an
        event delivered by the listener and the same transaction posted to the
        API cannot both land.
        """
        address = validate_address(address)
        amount = validate_amount(amount)
        return self.retry_policy.call(self._apply_once, operation, address, amount, reference)

    def get_balance(self, address: str) -> Decimal:
        record = self.get_record(address)
        return record.balance if record is not None else ZERO

    def get_record(self, address: str) -> Optional[models.UserBalance]:
        address = validate_address(address)
        with self._read_session() as db:
            return db.get(models.UserBalance, address)

    def list_records(self) -> List[models.UserBalance]:
        with self._read_session() as db:
            return db.query(models.UserBalance).order_by(models.UserBalance.address).all()

    def ledger_total(self) -> Decimal:
        with self._read_session() as db:
            total = db.query(func.sum(models.UserBalance.balance, type_=Amount())).scalar()
        return total if total is not None else ZERO

    def audit_total(self) -> Decimal:
        with self._read_session() as db:
            return self.audit.sum_balances(db)

    def history(self, address: str, limit: int = 100) -> List[models.BalanceAuditLog]:
        address = validate_address(address)
        with self._read_session() as db:
            return self.audit.history(db, address, limit=limit)

    def record_system_event(
        self,
        operation: OperationType,
        amount: Optional[Decimal],
        balance_before: Decimal,
        balance_after: Optional[Decimal],
        details: Optional[dict] = None,
    ) -> int:
        """Append an audit entry under the system sentinel address. Returns its id."""

        def _write() -> int:
            db = self.session_factory()
            try:
                entry = self.audit.append(
                    db, SYSTEM_ADDRESS, operation, amount, balance_before, balance_after, details=details
                )
                db.commit()
                return entry.id
            except DBAPIError as exc:
                db.rollback()
                if _is_transient(exc):
                    raise TransientStoreError(f"Balance store unavailable: {exc.orig}") from exc
                raise
            finally:
                db.close()

        return self.retry_policy.call(_write)

    @contextmanager
    def locked_transaction(
        self, address: str, create: bool = False
    ) -> Iterator[Tuple[Session, Optional[models.UserBalance]]]:
        """
        Yield ``(session, record)`` with the address locked for the whole unit of
        work. Commits when the block exits cleanly, rolls back otherwise.
        """
        with self.locks.hold(address, self.timeout_seconds):
            db = self.session_factory()
            try:
                self._bound_duration(db)
                record = (
                    db.query(models.UserBalance)
                    .filter(models.UserBalance.address == address)
                    .with_for_update()
                    .first()
                )
                if record is None and create:
                    record = models.UserBalance(address=address, balance=ZERO)
                    db.add(record)
                    db.flush()
                yield db, record
                db.commit()
            except PoolTimeoutError as exc:
                db.rollback()
                raise TransientStoreError(f"Connection pool exhausted: {exc}") from exc
            except DBAPIError as exc:
                db.rollback()
                if _is_transient(exc):
                    raise TransientStoreError(f"Balance store unavailable: {exc.orig}") from exc
                raise
            except BaseException:
                db.rollback()
                raise
            finally:
                db.close()

    def _apply_once(
        self, operation: OperationType, address: str, amount: Decimal, reference: Optional[str]
    ) -> Tuple[Decimal, bool]:
        sign = operation_sign_map[operation]
        create = operation in CREATING_OPERATIONS
        with self.locked_transaction(address, create=create) as (db, record):
            known = record is not None and reference is not None
            if known and self.audit.has_entry(db, address, operation, reference):
                logger.info(
                    "Skipping already applied %s address=%s reference=%s balance=%s",
                    operation.value,
                    address,
                    reference,
                    record.balance,
                )
                return record.balance, False
            if record is None:
                raise UserNotFoundError(address)
            before = record.balance
            if sign < 0 and amount > before:
                raise InsufficientBalanceError(address, before, amount)
            after = before + sign * amount
            if sign:
                record.balance = after
            self.audit.append(db, address, operation, amount, before, after, reference_id=reference)
        logger.info(
            "Applied %s address=%s amount=%s balance_before=%s balance_after=%s reference=%s",
            operation.value,
            address,
            amount,
            before,
            after,
            reference,
        )
        return after, True

    def _bound_duration(self, db: Session):
        if db.get_bind().dialect.name == "postgresql":
            timeout_ms = int(self.timeout_seconds * 1000)
            db.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
            db.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))

    @contextmanager
    def _read_session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except DBAPIError as exc:
            if _is_transient(exc):
                raise TransientStoreError(f"Balance store unavailable: {exc.orig}") from exc
            raise
        finally:
            db.close()
