import asyncio
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from house_ledger import models
from house_ledger.config import OperationType, settings
from house_ledger.errors import LedgerError, ValidationError
from house_ledger.events import ChainEvent, DepositEvent, RoundSettledEvent, WithdrawalEvent, parse_event
from house_ledger.ledger import BalanceLedger
from house_ledger.logging_config import get_logger
from house_ledger.models import utcnow

logger = get_logger(__name__)

PENDING = "pending"
FAILED = "failed"
APPLIED = "applied"
DEAD = "dead"


def event_address(event: ChainEvent) -> str:
    return event.player if isinstance(event, RoundSettledEvent) else event.userAddress


def enqueue_event(db: Session, event: ChainEvent) -> tuple[models.EventOutbox, bool]:
    """
    Persist an event for delivery. Returns ``(record, created)``; an event
    already in the outbox is not enqueued twice.
    """
    existing = db.query(models.EventOutbox).filter_by(event_key=event.key).first()
    if existing:
        return existing, False
    record = models.EventOutbox(
        event_key=event.key,
        event_type=event.type,
        payload=event.model_dump(mode="json"),
        status=PENDING,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return db.query(models.EventOutbox).filter_by(event_key=event.key).one(), False
    db.refresh(record)
    logger.info("Enqueued chain event key=%s record_id=%s", event.key, record.id)
    return record, True


def apply_event(ledger: BalanceLedger, event: ChainEvent) -> str:
    """
    Apply one event to the ledger. Returns ``"applied"``, ``"duplicate"`` when
    the audit log already holds the operation, or ``"ignored"``.
    """
    if isinstance(event, DepositEvent):
        _, applied = ledger.apply(OperationType.DEPOSIT, event.userAddress, event.amount, event.txHash)
    elif isinstance(event, WithdrawalEvent):
        _, applied = ledger.apply(OperationType.WITHDRAWAL, event.userAddress, event.amount, event.txHash)
    elif event.won:
        if event.payout <= Decimal(0):
            raise ValidationError(f"Winning bet {event.betId} has no payout")
        _, applied = ledger.apply(OperationType.BET_WON, event.player, event.payout, event.betId)
    elif event.betAmount and event.betAmount > 0:
        _, applied = ledger.apply(OperationType.BET_LOST, event.player, event.betAmount, event.betId)
    else:
        logger.info("Bet lost, no payout needed bet_id=%s player=%s", event.betId, event.player)
        return "ignored"
    return APPLIED if applied else "duplicate"


async def process_outbox(db: Session, ledger: BalanceLedger, max_attempts: Optional[int] = None) -> dict:
    """
    Deliver due outbox records to the ledger in enqueue order.

    Once a record for an address is left undelivered, later records for the
    same address wait for the next pass so per-address order is kept.
    """
    max_attempts = max_attempts if max_attempts is not None else settings.outbox_max_attempts
    counts = {APPLIED: 0, FAILED: 0, DEAD: 0, "skipped": 0}
    blocked: set[str] = set()
    model = models.EventOutbox
    pending = db.query(model).filter(model.status.in_((PENDING, FAILED))).order_by(model.id).all()
    # end the read so the ledger's own transactions are not queued behind it
    db.commit()
    now = utcnow()
    for record in pending:
        try:
            event = parse_event(record.payload)
        except ValidationError as exc:
            _dead_letter(db, record, exc)
            counts[DEAD] += 1
            continue
        address = event_address(event)
        if address in blocked or (record.next_attempt_at and record.next_attempt_at > now):
            blocked.add(address)
            counts["skipped"] += 1
            continue
        logger.info(
            "Processing outbox record: record_id=%s event_type=%s attempt_count=%s",
            record.id,
            record.event_type,
            record.attempt_count,
        )
        record.attempt_count += 1
        try:
            outcome = await asyncio.to_thread(apply_event, ledger, event)
        except LedgerError as exc:
            if not exc.retryable or record.attempt_count >= max_attempts:
                _dead_letter(db, record, exc)
                counts[DEAD] += 1
            else:
                record.status = FAILED
                record.last_error = str(exc)
                record.next_attempt_at = utcnow() + timedelta(seconds=2 ** record.attempt_count)
                logger.warning(
                    "Outbox delivery failed: record_id=%s error=%s next_attempt_at=%s attempt_count=%s",
                    record.id,
                    exc,
                    record.next_attempt_at,
                    record.attempt_count,
                )
                db.add(record)
                db.commit()
                counts[FAILED] += 1
            blocked.add(address)
            continue
        record.status = APPLIED
        record.last_error = None
        record.applied_at = utcnow()
        db.add(record)
        db.commit()
        counts[APPLIED] += 1
        logger.info("Outbox record delivered: record_id=%s outcome=%s", record.id, outcome)
    return counts


def _dead_letter(db: Session, record: models.EventOutbox, exc: Exception):
    record.status = DEAD
    record.last_error = str(exc)
    record.next_attempt_at = None
    db.add(record)
    db.commit()
    logger.critical(
        "Outbox record dead-lettered, manual reconciliation required: record_id=%s event_key=%s attempts=%s error=%s",
        record.id,
        record.event_key,
        record.attempt_count,
        exc,
    )


def replay_record(db: Session, record_id: int) -> Optional[models.EventOutbox]:
    """Force a record back to pending and clear its last error."""
    record = db.get(models.EventOutbox, record_id)
    if record is None:
        return None
    record.status = PENDING
    record.last_error = None
    record.next_attempt_at = None
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("Forced replay for outbox record_id=%s", record_id)
    return record
