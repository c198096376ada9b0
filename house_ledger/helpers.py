import hashlib
import json
import uuid

from house_ledger import models


def hash_request(body: dict) -> str:
    return hashlib.sha256(json.dumps(body, sort_keys=True).encode()).hexdigest()


def new_bet_reference(address: str) -> str:
    return f"bet_{uuid.uuid4().hex[:16]}_{address[-6:]}"


def serialize_outbox(record: models.EventOutbox) -> dict:
    return {
        "id": record.id,
        "eventKey": record.event_key,
        "eventType": record.event_type,
        "status": record.status,
        "attemptCount": record.attempt_count,
        "nextAttemptAt": record.next_attempt_at.isoformat() if record.next_attempt_at else None,
        "lastError": record.last_error,
        "appliedAt": record.applied_at.isoformat() if record.applied_at else None,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
        "payload": record.payload,
    }
