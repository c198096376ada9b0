from contextlib import asynccontextmanager
from typing import Awaitable, Callable, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from fastapi.concurrency import run_in_threadpool

from house_ledger import models
from house_ledger.config import DEFAULT_ADMIN_ID, settings
from house_ledger.database import init_db
from house_ledger.db import get_idempotent_response, store_idempotency
from house_ledger.errors import (
    ChainOracleError,
    InsufficientBalanceError,
    TransientStoreError,
    UserNotFoundError,
    ValidationError,
)
from house_ledger.events import parse_event
from house_ledger.helpers import hash_request, new_bet_reference, serialize_outbox
from house_ledger.logging_config import get_logger
from house_ledger.outbox import enqueue_event, replay_record
from house_ledger.reconciliation import results_to_csv
from house_ledger.schemas import (
    AuditEntry,
    BalanceResponse,
    BetLostRequest,
    BetRequest,
    BetResponse,
    DepositRequest,
    ListenerCommand,
    MutationResponse,
    PayoutRequest,
    PayoutResponse,
    ReconciliationResult,
    ReconciliationSummary,
    SyncCheckResult,
    WithdrawRequest,
)
from house_ledger.security import require_bearer_token, require_signed_body
from house_ledger.service import LedgerService


logger = get_logger(__name__)

_service: Optional[LedgerService] = None


def get_service() -> LedgerService:
    global _service
    if _service is None:
        _service = LedgerService.from_settings()
    return _service


def get_db(service: LedgerService = Depends(get_service)):
    db = service.session_factory()
    try:
        yield db
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.background_workers_enabled:
        init_db()
        logger.info("Starting house ledger background tasks")
        get_service().start()
    yield
    if _service is not None:
        await _service.aclose()


app = FastAPI(title="House Balance Ledger", lifespan=lifespan)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"error": exc.message})


@app.exception_handler(InsufficientBalanceError)
async def insufficient_balance_handler(request: Request, exc: InsufficientBalanceError):
    return JSONResponse(
        status_code=400,
        content={
            "error": "Insufficient house balance. Please deposit more FLOW.",
            "balance": str(exc.balance),
            "requested": str(exc.requested),
            "shortfall": str(exc.shortfall),
        },
    )


@app.exception_handler(UserNotFoundError)
async def user_not_found_handler(request: Request, exc: UserNotFoundError):
    return JSONResponse(status_code=404, content={"error": "Account not found"})


@app.exception_handler(TransientStoreError)
async def transient_store_handler(request: Request, exc: TransientStoreError):
    logger.error("Store unavailable on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"error": "Service temporarily unavailable. Please try again."})


@app.exception_handler(ChainOracleError)
async def chain_error_handler(request: Request, exc: ChainOracleError):
    logger.error("Chain unavailable on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"error": "Chain temporarily unavailable. Please try again."})


async def _run_idempotent(
    db: Session,
    idempotency_key: Optional[str],
    route: str,
    body: dict,
    action: Callable[[], Awaitable[dict]],
):
    body_hash = hash_request({"route": route, "body": body})
    if idempotency_key:
        existing = get_idempotent_response(db, idempotency_key, body_hash)
        if existing:
            return existing
    response = await action()
    if idempotency_key:
        store_idempotency(db, idempotency_key, body_hash, response)
    return response


@app.get("/balance/{address}", response_model=BalanceResponse)
async def get_balance(address: str, service: LedgerService = Depends(get_service)):
    record = await run_in_threadpool(service.ledger.get_record, address)
    if record is None:
        return BalanceResponse(address=address, balance=0, updatedAt=None)
    return BalanceResponse(address=address, balance=record.balance, updatedAt=record.updated_at)


@app.get("/balance/{address}/history", response_model=List[AuditEntry])
async def get_history(
    address: str,
    limit: int = Query(100, ge=1, le=500),
    service: LedgerService = Depends(get_service),
):
    entries = await run_in_threadpool(service.ledger.history, address, limit)
    return [AuditEntry.model_validate(entry) for entry in entries]


@app.post("/balance/deposit", response_model=MutationResponse)
async def deposit(
    request: DepositRequest,
    service: LedgerService = Depends(get_service),
    db: Session = Depends(get_db),
    idempotency_key: str | None = Header(None),
):
    async def action():
        new_balance = await run_in_threadpool(
            service.ledger.deposit, request.userAddress, request.amount, request.txHash
        )
        return MutationResponse(newBalance=new_balance).model_dump(mode="json")

    return await _run_idempotent(db, idempotency_key, "deposit", request.model_dump(mode="json"), action)


@app.post("/balance/withdraw", response_model=MutationResponse)
async def withdraw(
    request: WithdrawRequest,
    service: LedgerService = Depends(get_service),
    db: Session = Depends(get_db),
    idempotency_key: str | None = Header(None),
):
    async def action():
        new_balance = await run_in_threadpool(
            service.ledger.withdraw, request.userAddress, request.amount, request.txHash
        )
        return MutationResponse(newBalance=new_balance).model_dump(mode="json")

    return await _run_idempotent(db, idempotency_key, "withdraw", request.model_dump(mode="json"), action)


@app.post("/balance/bet", response_model=BetResponse)
async def place_bet(
    request: BetRequest,
    service: LedgerService = Depends(get_service),
    db: Session = Depends(get_db),
    idempotency_key: str | None = Header(None),
):
    async def action():
        bet_reference = new_bet_reference(request.userAddress)
        details = {
            "roundId": request.roundId,
            "multiplier": str(request.multiplier),
            "targetCell": request.targetCell.model_dump(mode="json"),
        }
        remaining, tx_id = await service.place_bet(request.userAddress, request.betAmount, bet_reference, details)
        logger.info("Bet placed address=%s bet_id=%s tx_id=%s", request.userAddress, bet_reference, tx_id)
        return BetResponse(remainingBalance=remaining, betId=bet_reference, transactionId=tx_id).model_dump(mode="json")

    try:
        return await _run_idempotent(db, idempotency_key, "bet", request.model_dump(mode="json"), action)
    except ChainOracleError:
        return JSONResponse(
            status_code=500,
            content={
                "error": "Bet placement failed. Your balance will be reconciled.",
                "details": "Please contact support if your balance is not restored.",
            },
        )


@app.post("/balance/payout", response_model=PayoutResponse)
async def credit_payout(
    request: PayoutRequest,
    service: LedgerService = Depends(get_service),
    db: Session = Depends(get_db),
    idempotency_key: str | None = Header(None),
):
    async def action():
        new_balance, tx_id = await service.settle_payout(request.userAddress, request.payoutAmount, request.betId)
        return PayoutResponse(newBalance=new_balance, transactionId=tx_id).model_dump(mode="json")

    try:
        return await _run_idempotent(db, idempotency_key, "payout", request.model_dump(mode="json"), action)
    except ChainOracleError:
        return JSONResponse(
            status_code=500,
            content={
                "error": "Payout credited but settlement failed. It will be reconciled.",
                "details": "Please contact support if the payout is not reflected on chain.",
            },
        )


@app.post("/balance/bet-lost", response_model=MutationResponse)
async def record_bet_lost(request: BetLostRequest, service: LedgerService = Depends(get_service)):
    new_balance = await run_in_threadpool(
        service.ledger.record_bet_lost, request.userAddress, request.betAmount, request.betId
    )
    return MutationResponse(newBalance=new_balance)


@app.post("/admin/sync-check", response_model=SyncCheckResult)
async def run_sync_check(_auth=Depends(require_bearer_token), service: LedgerService = Depends(get_service)):
    return await service.sync_checker.check_sync()


@app.get("/admin/sync-status")
async def sync_status(_auth=Depends(require_bearer_token), service: LedgerService = Depends(get_service)):
    last = service.sync_checker.last_result
    return {
        "lastResult": last.model_dump(mode="json") if last else None,
        "tasks": service.status(),
    }


@app.post("/admin/reconcile/{address}", response_model=ReconciliationResult)
async def reconcile_user(
    address: str,
    admin_id: str = Query(DEFAULT_ADMIN_ID),
    _auth=Depends(require_bearer_token),
    service: LedgerService = Depends(get_service),
):
    return await service.reconciler.reconcile_user(address, admin_id)


@app.post("/admin/reconcile", response_model=ReconciliationSummary)
async def reconcile_all(
    dry_run: bool = Query(False),
    admin_id: str = Query(DEFAULT_ADMIN_ID),
    _auth=Depends(require_bearer_token),
    service: LedgerService = Depends(get_service),
):
    results = await service.reconciler.reconcile_all(admin_id, dry_run=dry_run)
    return ReconciliationSummary(
        dry_run=dry_run,
        mismatches=len(results),
        failures=sum(1 for r in results if not r.success),
        results=results,
    )


@app.get("/admin/reconciliation.csv")
async def download_reconciliation_csv(
    _auth=Depends(require_bearer_token), service: LedgerService = Depends(get_service)
):
    results = await service.reconciler.reconcile_all(DEFAULT_ADMIN_ID, dry_run=True)
    csv_text, mismatch_count = results_to_csv(results)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={
            "Content-Disposition": 'attachment; filename="reconciliation.csv"',
            "X-Mismatch-Count": str(mismatch_count),
        },
    )


@app.post("/events/incoming", dependencies=[Depends(require_signed_body)])
async def receive_event(request: Request, db: Session = Depends(get_db)):
    try:
        raw = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid JSON body")
    event = parse_event(raw)
    record, created = enqueue_event(db, event)
    logger.info("Received chain event key=%s record_id=%s duplicate=%s", event.key, record.id, not created)
    return {"status": "accepted", "recordId": record.id, "duplicate": not created}


@app.get("/events/outbox")
async def list_outbox(
    status: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    query = db.query(models.EventOutbox)
    if status:
        query = query.filter(models.EventOutbox.status == status)
    records = query.order_by(models.EventOutbox.created_at.desc()).limit(limit).all()
    return [serialize_outbox(r) for r in records]


@app.post("/admin/replay/{record_id}")
async def force_replay(record_id: int, _auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    """
    Force a single outbox record back to pending and clear the last_error.
    """
    record = replay_record(db, record_id)
    if not record:
        raise HTTPException(status_code=404, detail="outbox record not found")
    return serialize_outbox(record)


@app.get("/admin/listener")
async def listener_status(_auth=Depends(require_bearer_token), service: LedgerService = Depends(get_service)):
    task = service.tasks["listener"]
    return {"success": True, "isListening": task.running, "task": task.status()}


@app.post("/admin/listener")
async def manage_listener(
    command: ListenerCommand,
    _auth=Depends(require_bearer_token),
    service: LedgerService = Depends(get_service),
):
    task = service.tasks["listener"]
    if command.action == "start":
        changed = task.start()
        message = "Event listener started" if changed else "Event listener is already running"
    elif command.action == "stop":
        changed = await task.stop()
        message = "Event listener stopped" if changed else "Event listener is not running"
    else:
        changed = True
        message = "Event listener is running" if task.running else "Event listener is not running"
    return {"success": changed, "message": message, "isListening": task.running, "task": task.status()}


@app.get("/swagger", include_in_schema=False)
async def swagger_ui():
    return get_swagger_ui_html(openapi_url=str(app.openapi_url), title="House Balance Ledger - Swagger UI")


@app.get("/health")
async def health():
    return {"status": "ok"}
