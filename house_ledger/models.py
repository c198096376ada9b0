from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, CheckConstraint, Column, DateTime, Index, Integer, String, event

from house_ledger.amounts import Amount
from house_ledger.database import Base


def utcnow() -> datetime:
    # naive UTC, so values compare the same whether or not the backend keeps tzinfo
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserBalance(Base):
    __tablename__ = "user_balances"
    address = Column(String(66), primary_key=True)
    balance = Column(Amount, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_user_balances_non_negative"),)


class BalanceAuditLog(Base):
    __tablename__ = "balance_audit_log"
    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(String(66), nullable=False)
    operation_type = Column(String, nullable=False)
    amount = Column(Amount, nullable=True)  # null only for a sync check whose vault query failed
    balance_before = Column(Amount, nullable=False)
    balance_after = Column(Amount, nullable=True)
    reference_id = Column(String, nullable=True)
    admin_id = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    __table_args__ = (
        Index("ix_balance_audit_log_address", "address"),
        Index("ix_balance_audit_log_created_at", "created_at"),
        Index("ix_balance_audit_log_reference", "address", "operation_type", "reference_id"),
    )


@event.listens_for(BalanceAuditLog, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise ValueError("balance_audit_log is append-only")


@event.listens_for(BalanceAuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise ValueError("balance_audit_log is append-only")


class EventOutbox(Base):
    __tablename__ = "event_outbox"
    id = Column(Integer, primary_key=True)
    event_key = Column(String, unique=True, index=True, nullable=False)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String, nullable=False, default="pending")
    attempt_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=True, default=utcnow)
    last_error = Column(String, nullable=True)
    applied_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ListenerCursor(Base):
    __tablename__ = "listener_cursors"
    event_type = Column(String, primary_key=True)
    last_height = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    id = Column(Integer, primary_key=True)
    key = Column(String, unique=True, index=True, nullable=False)
    request_hash = Column(String, nullable=False)
    response_body = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
