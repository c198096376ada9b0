"""Typed chain events.

Raw payloads (a signed webhook body or a decoded JSON-Cadence event) are
validated into one of these variants before anything reaches the ledger.
"""
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

import pydantic
from pydantic import BaseModel, Field, TypeAdapter, field_validator

from house_ledger.amounts import validate_address, validate_amount
from house_ledger.errors import ValidationError


class _ChainEventBase(BaseModel):
    txHash: str = Field(..., min_length=1)
    eventIndex: int = 0
    blockHeight: Optional[int] = None

    @property
    def key(self) -> str:
        return f"{self.type}:{self.txHash}:{self.eventIndex}"


class DepositEvent(_ChainEventBase):
    type: Literal["deposit"] = "deposit"
    userAddress: str
    amount: Decimal
    timestamp: Optional[Decimal] = None

    @field_validator("userAddress")
    @classmethod
    def _address(cls, value: str) -> str:
        return validate_address(value)

    @field_validator("amount")
    @classmethod
    def _amount(cls, value: Decimal) -> Decimal:
        return validate_amount(value)


class WithdrawalEvent(_ChainEventBase):
    type: Literal["withdrawal"] = "withdrawal"
    userAddress: str
    amount: Decimal
    timestamp: Optional[Decimal] = None

    @field_validator("userAddress")
    @classmethod
    def _address(cls, value: str) -> str:
        return validate_address(value)

    @field_validator("amount")
    @classmethod
    def _amount(cls, value: Decimal) -> Decimal:
        return validate_amount(value)


class RoundSettledEvent(_ChainEventBase):
    type: Literal["round_settled"] = "round_settled"
    betId: str
    player: str
    won: bool
    payout: Decimal = Decimal(0)
    betAmount: Optional[Decimal] = None
    actualPriceChange: Optional[Decimal] = None
    startPrice: Optional[Decimal] = None
    endPrice: Optional[Decimal] = None
    timestamp: Optional[Decimal] = None

    @field_validator("player")
    @classmethod
    def _address(cls, value: str) -> str:
        return validate_address(value)

    @field_validator("payout")
    @classmethod
    def _payout(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("payout must not be negative")
        return value


ChainEvent = Annotated[Union[DepositEvent, WithdrawalEvent, RoundSettledEvent], Field(discriminator="type")]
chain_event_adapter = TypeAdapter(ChainEvent)

# contract event name -> variant tag
contract_event_map = {
    "Deposit": "deposit",
    "Withdrawal": "withdrawal",
    "RoundSettled": "round_settled",
}


def parse_event(data: dict) -> ChainEvent:
    try:
        return chain_event_adapter.validate_python(data)
    except (pydantic.ValidationError, ValidationError) as exc:
        raise ValidationError(f"Invalid chain event: {exc}") from exc


def event_type_id(contract_address: str, name: str) -> str:
    return f"A.{contract_address.removeprefix('0x')}.OverflowGame.{name}"


def from_chain(raw: dict) -> ChainEvent:
    """Build a typed event from a decoded access-node event."""
    name = raw["type"].rsplit(".", 1)[-1]
    if name not in contract_event_map:
        raise ValidationError(f"Unsupported chain event {raw['type']}")
    data = dict(raw["data"])
    if "betId" in data:
        data["betId"] = str(data["betId"])
    data.update(
        type=contract_event_map[name],
        txHash=raw["transaction_id"],
        eventIndex=raw.get("event_index", 0),
        blockHeight=raw.get("block_height"),
    )
    return parse_event(data)
