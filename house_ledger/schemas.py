from datetime import datetime
from decimal import Decimal
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class DepositRequest(BaseModel):
    userAddress: str
    amount: Decimal
    txHash: str


class WithdrawRequest(BaseModel):
    userAddress: str
    amount: Decimal
    txHash: str


class TargetCell(BaseModel):
    id: int
    priceChange: Decimal
    direction: Literal["UP", "DOWN"]
    timeframe: Decimal


class BetRequest(BaseModel):
    userAddress: str
    betAmount: Decimal
    roundId: Optional[int] = None
    multiplier: Decimal = Field(..., ge=1)
    targetCell: TargetCell


class PayoutRequest(BaseModel):
    userAddress: str
    payoutAmount: Decimal
    betId: str


class BetLostRequest(BaseModel):
    userAddress: str
    betAmount: Decimal
    betId: str


class BalanceResponse(BaseModel):
    address: str
    balance: Decimal
    updatedAt: Optional[datetime] = None


class MutationResponse(BaseModel):
    success: bool = True
    newBalance: Decimal


class PayoutResponse(BaseModel):
    success: bool = True
    newBalance: Decimal
    transactionId: Optional[str] = None


class BetResponse(BaseModel):
    success: bool = True
    remainingBalance: Decimal
    betId: str
    transactionId: Optional[str] = None


class AuditEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    address: str
    operation_type: str
    amount: Optional[Decimal] = None
    balance_before: Decimal
    balance_after: Optional[Decimal] = None
    reference_id: Optional[str] = None
    admin_id: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    created_at: datetime


class SyncCheckResult(BaseModel):
    synchronized: bool
    ledger_total: Decimal
    vault_balance: Optional[Decimal] = None
    discrepancy: Optional[Decimal] = None
    audit_total: Optional[Decimal] = None
    timestamp: datetime
    error: Optional[str] = None


class ReconciliationResult(BaseModel):
    address: str
    old_balance: Decimal
    new_balance: Decimal
    discrepancy: Decimal
    success: bool
    timestamp: datetime
    dry_run: bool = False
    error: Optional[str] = None


class ReconciliationSummary(BaseModel):
    dry_run: bool
    mismatches: int
    failures: int
    results: List[ReconciliationResult]


class ListenerCommand(BaseModel):
    action: Literal["start", "stop", "status"]
