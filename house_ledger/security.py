import hmac
import hashlib
import time
from fastapi import HTTPException, Header, Request
from house_ledger.config import settings


def compute_signature(body: bytes, timestamp: str) -> str:
    message = timestamp.encode() + b":" + body
    return hmac.new(settings.hmac_secret.encode(), message, hashlib.sha256).hexdigest()


def validate_signature(body: bytes, signature: str, timestamp: str):
    try:
        sent_at = int(timestamp)
    except ValueError:
        raise HTTPException(status_code=401, detail="invalid timestamp")
    if abs(int(time.time()) - sent_at) > settings.timestamp_skew_seconds:
        raise HTTPException(status_code=401, detail="timestamp skew")
    expected = compute_signature(body, timestamp)
    if not hmac.compare_digest(expected, signature):
        raise HTTPException(status_code=401, detail="invalid signature")


async def require_signed_body(
    request: Request,
    x_signature: str | None = Header(None),
    x_timestamp: str | None = Header(None),
):
    """
    FastAPI dependency for chain event pushes: the raw body must carry a valid
    HMAC-SHA256 signature over ``<timestamp>:<body>``.
    """
    if not x_signature or not x_timestamp:
        raise HTTPException(status_code=401, detail="missing signature")
    validate_signature(await request.body(), x_signature, x_timestamp)


def require_bearer_token(authorization: str | None = Header(None, alias="Authorization")):
    """
    FastAPI dependency to enforce Authorization: Bearer <token> when configured.
    """
    if not settings.bearer_token:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token, settings.bearer_token):
        raise HTTPException(status_code=401, detail="Unauthorized")
