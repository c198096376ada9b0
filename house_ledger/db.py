from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from fastapi import HTTPException
from house_ledger import models


def get_idempotent_response(db: Session, key: str, body_hash: str):
    """Return the stored response for ``key``, or None if the key is new."""
    existing = db.query(models.IdempotencyKey).filter_by(key=key).first()
    # end the read before the caller's ledger work takes the store's write lock
    db.commit()
    if existing:
        if existing.request_hash != body_hash:
            raise HTTPException(status_code=409, detail="idempotency conflict")
        return existing.response_body
    return None


def store_idempotency(db: Session, key: str, body_hash: str, response_body: dict):
    record = models.IdempotencyKey(key=key, request_hash=body_hash, response_body=response_body)
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent request with the same key stored first
        db.rollback()
    return response_body
