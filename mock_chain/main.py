import base64
import json
import logging
import uuid
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import JSON, Column, DateTime, Integer, Numeric, String, create_engine, func
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("mock-chain")

DB_URL = "sqlite:////data/chain.db"
engine = create_engine(DB_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

app = FastAPI(title="Mock Flow Access Node")

CONTRACT_ADDRESS = "0xf8d6e0586b0a20c7"
EVENT_PREFIX = f"A.{CONTRACT_ADDRESS.removeprefix('0x')}.OverflowGame"


class Account(Base):
    __tablename__ = "accounts"
    address = Column(String, primary_key=True)
    balance = Column(Numeric(28, 8), nullable=False, default=0)


class Vault(Base):
    __tablename__ = "vault"
    id = Column(Integer, primary_key=True)
    balance = Column(Numeric(28, 8), nullable=False, default=0)


class Event(Base):
    __tablename__ = "events"
    id = Column(Integer, primary_key=True)
    type = Column(String, index=True, nullable=False)
    transaction_id = Column(String, nullable=False)
    block_height = Column(Integer, index=True, nullable=False)
    fields = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Submission(Base):
    __tablename__ = "submissions"
    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False)
    transaction_id = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


Base.metadata.create_all(bind=engine)


class ScriptRequest(BaseModel):
    script: str
    arguments: list[str] = []


class Transfer(BaseModel):
    address: str
    amount: Decimal


class BalanceOverride(BaseModel):
    balance: Decimal


class Settlement(BaseModel):
    player: str
    betId: str
    won: bool
    payout: Decimal = Decimal(0)
    betAmount: Optional[Decimal] = None


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _encode(value: dict) -> str:
    return base64.b64encode(json.dumps(value).encode()).decode()


def _ufix64(value: Decimal) -> dict:
    return {"type": "UFix64", "value": f"{Decimal(value):.8f}"}


def _vault(db: Session) -> Vault:
    vault = db.get(Vault, 1)
    if vault is None:
        vault = Vault(id=1, balance=0)
        db.add(vault)
        db.flush()
    return vault


def _account(db: Session, address: str) -> Account:
    account = db.get(Account, address)
    if account is None:
        account = Account(address=address, balance=0)
        db.add(account)
        db.flush()
    return account


def _sealed_height(db: Session) -> int:
    return db.query(func.max(Event.block_height)).scalar() or 1


def _emit(db: Session, name: str, fields: list) -> Event:
    event = Event(
        type=f"{EVENT_PREFIX}.{name}",
        transaction_id=uuid.uuid4().hex,
        block_height=_sealed_height(db) + 1,
        fields=fields,
    )
    db.add(event)
    db.commit()
    logger.info("Sealed event type=%s tx=%s height=%s", event.type, event.transaction_id, event.block_height)
    return event


def _field(name: str, value: dict) -> dict:
    return {"name": name, "value": value}


@app.post("/v1/scripts")
async def execute_script(body: ScriptRequest, block_height: str = "sealed", db: Session = Depends(get_db)):
    script = base64.b64decode(body.script).decode()
    if not body.arguments:
        raise HTTPException(status_code=400, detail="missing address argument")
    address = json.loads(base64.b64decode(body.arguments[0]))["value"]
    if "getUserBalance" in script:
        balance = _account(db, address).balance
    else:
        balance = _vault(db).balance
    db.commit()
    logger.info("Executed balance script address=%s balance=%s", address, balance)
    return _encode(_ufix64(balance))


@app.get("/v1/blocks")
async def latest_block(height: str = "sealed", db: Session = Depends(get_db)):
    return [{"header": {"height": str(_sealed_height(db))}}]


@app.get("/v1/events")
async def list_events(
    type: str,
    start_height: int = Query(...),
    end_height: int = Query(...),
    db: Session = Depends(get_db),
):
    rows = (
        db.query(Event)
        .filter(Event.type == type)
        .filter(Event.block_height >= start_height)
        .filter(Event.block_height <= end_height)
        .order_by(Event.block_height, Event.id)
        .all()
    )
    blocks: dict[int, list] = {}
    for row in rows:
        payload = {"type": "Event", "value": {"id": row.type, "fields": row.fields}}
        blocks.setdefault(row.block_height, []).append({
            "type": row.type,
            "transaction_id": row.transaction_id,
            "event_index": "0",
            "payload": _encode(payload),
        })
    return [{"block_height": str(height), "events": events} for height, events in blocks.items()]


@app.post("/relay/bets")
async def register_bet(payload: dict, db: Session = Depends(get_db)):
    tx_id = uuid.uuid4().hex
    db.add(Submission(kind="bet", transaction_id=tx_id, payload=payload))
    db.commit()
    logger.info("Registered bet betId=%s player=%s tx=%s", payload.get("betId"), payload.get("player"), tx_id)
    return {"transactionId": tx_id}


@app.post("/relay/settlements")
async def settle_bet(body: Settlement, db: Session = Depends(get_db)):
    account = _account(db, body.player)
    vault = _vault(db)
    if body.won:
        account.balance += body.payout
        vault.balance += body.payout
    fields = [
        _field("betId", {"type": "String", "value": body.betId}),
        _field("player", {"type": "Address", "value": body.player}),
        _field("won", {"type": "Bool", "value": body.won}),
        _field("payout", _ufix64(body.payout)),
    ]
    if body.betAmount is not None:
        fields.append(_field("betAmount", _ufix64(body.betAmount)))
    event = _emit(db, "RoundSettled", fields)
    return {"transactionId": event.transaction_id}


@app.post("/admin/deposit")
async def deposit(body: Transfer, db: Session = Depends(get_db)):
    account = _account(db, body.address)
    account.balance += body.amount
    _vault(db).balance += body.amount
    event = _emit(db, "Deposit", [
        _field("userAddress", {"type": "Address", "value": body.address}),
        _field("amount", _ufix64(body.amount)),
    ])
    return {"transactionId": event.transaction_id, "blockHeight": event.block_height}


@app.post("/admin/withdraw")
async def withdraw(body: Transfer, db: Session = Depends(get_db)):
    account = _account(db, body.address)
    if account.balance < body.amount:
        raise HTTPException(status_code=400, detail="insufficient balance")
    account.balance -= body.amount
    _vault(db).balance -= body.amount
    event = _emit(db, "Withdrawal", [
        _field("userAddress", {"type": "Address", "value": body.address}),
        _field("amount", _ufix64(body.amount)),
    ])
    return {"transactionId": event.transaction_id, "blockHeight": event.block_height}


@app.put("/admin/accounts/{address}")
async def override_account(address: str, body: BalanceOverride, db: Session = Depends(get_db)):
    """Set a user's authoritative balance without emitting an event, to stage drift."""
    _account(db, address).balance = body.balance
    db.commit()
    logger.warning("Overrode chain balance address=%s balance=%s", address, body.balance)
    return {"address": address, "balance": str(body.balance)}


@app.put("/admin/vault")
async def override_vault(body: BalanceOverride, db: Session = Depends(get_db)):
    _vault(db).balance = body.balance
    db.commit()
    logger.warning("Overrode vault balance balance=%s", body.balance)
    return {"balance": str(body.balance)}


@app.post("/admin/clear-db")
async def clear_db(db: Session = Depends(get_db)):
    """
    Dangerous: clears all mock chain state.
    """
    for model in (Event, Submission, Account, Vault):
        db.query(model).delete()
    db.commit()
    logger.warning("Cleared mock chain state via admin endpoint")
    return {"status": "cleared"}
