"""Chain access: balance scripts, event reads and transaction submission.

Talks to a Flow Access Node over its REST API. Values cross the wire as
base64-encoded JSON-Cadence.
"""
import base64
import json
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, List, Optional

import httpx

from house_ledger.amounts import to_decimal
from house_ledger.config import settings
from house_ledger.errors import ChainOracleError, ValidationError
from house_ledger.logging_config import get_logger
from house_ledger.retry import RetryPolicy

logger = get_logger(__name__)

FLOW_TOKEN_ADDRESSES = {
    "emulator": "0x0ae53cb6e3f42a79",
    "testnet": "0x7e60df042a9c0868",
    "mainnet": "0x1654653399040a61",
}

VAULT_BALANCE_SCRIPT = """
import FlowToken from {flow_token}
import OverflowGame from {contract}

access(all) fun main(contractAddress: Address): UFix64 {{
  let account = getAccount(contractAddress)
  let vaultRef = account.storage.borrow<&FlowToken.Vault>(
    from: /storage/OverflowGameEscrowVault
  ) ?? panic("Could not borrow reference to Escrow Vault")
  return vaultRef.balance
}}
"""

USER_BALANCE_SCRIPT = """
import OverflowGame from {contract}

access(all) fun main(userAddress: Address): UFix64 {{
  return OverflowGame.getUserBalance(userAddress: userAddress)
}}
"""


def encode_argument(value: dict) -> str:
    return base64.b64encode(json.dumps(value).encode()).decode()


def decode_value(encoded: str) -> dict:
    try:
        return json.loads(base64.b64decode(encoded))
    except (ValueError, TypeError) as exc:
        raise ChainOracleError(f"undecodable chain value: {exc}") from exc


def cadence_to_python(value: dict) -> Any:
    """Convert a JSON-Cadence value into plain Python values."""
    kind = value.get("type")
    inner = value.get("value")
    if kind == "Optional":
        return None if inner is None else cadence_to_python(inner)
    if kind in ("UFix64", "Fix64"):
        return Decimal(inner)
    if kind in ("Int", "Int8", "Int16", "Int32", "Int64", "UInt", "UInt8", "UInt16", "UInt32", "UInt64"):
        return int(inner)
    if kind in ("Address", "String", "Character"):
        return inner
    if kind == "Bool":
        return bool(inner)
    if kind == "Array":
        return [cadence_to_python(item) for item in inner]
    if kind in ("Event", "Struct", "Resource"):
        return {field["name"]: cadence_to_python(field["value"]) for field in inner.get("fields", [])}
    raise ChainOracleError(f"unsupported cadence type {kind!r}")


class ChainOracle(ABC):
    """What the ledger's reconciliation side needs from the chain."""

    @abstractmethod
    async def query_vault_balance(self, vault_address: str) -> Decimal:
        ...

    @abstractmethod
    async def query_user_authoritative_balance(self, user_address: str) -> Decimal:
        ...

    @abstractmethod
    async def submit_bet_registration(
        self, player: str, bet_amount: Decimal, bet_reference: str, details: Optional[dict] = None
    ) -> str:
        ...

    @abstractmethod
    async def submit_settlement(self, player: str, bet_reference: str, won: bool, payout: Decimal) -> str:
        ...

    @abstractmethod
    async def latest_sealed_height(self) -> int:
        ...

    @abstractmethod
    async def get_events(self, event_type: str, start_height: int, end_height: int) -> List[dict]:
        ...

    async def aclose(self):
        return None


class FlowChainOracle(ChainOracle):
    def __init__(
        self,
        access_node_url: str | None = None,
        relay_url: str | None = None,
        contract_address: str | None = None,
        flow_token_address: str | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        base_url = str(access_node_url or settings.flow_access_node_url)
        timeout = timeout_seconds if timeout_seconds is not None else settings.chain_timeout_seconds
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self.relay_url = str(relay_url or settings.chain_relay_url).rstrip("/")
        self.contract_address = contract_address or settings.contract_address
        self.flow_token_address = flow_token_address or FLOW_TOKEN_ADDRESSES["emulator"]
        self.retry_policy = retry_policy or RetryPolicy()

    async def query_vault_balance(self, vault_address: str) -> Decimal:
        script = VAULT_BALANCE_SCRIPT.format(flow_token=self.flow_token_address, contract=self.contract_address)
        return await self._query_ufix64(script, vault_address)

    async def query_user_authoritative_balance(self, user_address: str) -> Decimal:
        script = USER_BALANCE_SCRIPT.format(contract=self.contract_address)
        return await self._query_ufix64(script, user_address)

    async def submit_bet_registration(
        self, player: str, bet_amount: Decimal, bet_reference: str, details: Optional[dict] = None
    ) -> str:
        payload = {
            "player": player,
            "betAmount": str(bet_amount),
            "betId": bet_reference,
            "details": details or {},
        }
        return await self._submit("/bets", payload)

    async def submit_settlement(self, player: str, bet_reference: str, won: bool, payout: Decimal) -> str:
        payload = {"player": player, "betId": bet_reference, "won": won, "payout": str(payout)}
        return await self._submit("/settlements", payload)

    async def latest_sealed_height(self) -> int:
        body = await self._request("GET", "/v1/blocks", params={"height": "sealed"})
        try:
            return int(body[0]["header"]["height"])
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ChainOracleError(f"unexpected block response: {body!r}") from exc

    async def get_events(self, event_type: str, start_height: int, end_height: int) -> List[dict]:
        """
        Return decoded events in chain order, each as
        ``{"type", "transaction_id", "event_index", "block_height", "data"}``.
        """
        params = {"type": event_type, "start_height": start_height, "end_height": end_height}
        blocks = await self._request("GET", "/v1/events", params=params)
        events: List[dict] = []
        for block in blocks or []:
            for raw in block.get("events", []):
                payload = cadence_to_python(decode_value(raw["payload"]))
                events.append({
                    "type": raw["type"],
                    "transaction_id": raw["transaction_id"],
                    "event_index": int(raw.get("event_index", 0)),
                    "block_height": int(block["block_height"]),
                    "data": payload,
                })
        return events

    async def aclose(self):
        await self.client.aclose()

    async def _query_ufix64(self, script: str, address: str) -> Decimal:
        body = {
            "script": base64.b64encode(script.encode()).decode(),
            "arguments": [encode_argument({"type": "Address", "value": address})],
        }
        encoded = await self._request("POST", "/v1/scripts", params={"block_height": "sealed"}, json=body)
        value = cadence_to_python(decode_value(encoded))
        try:
            return to_decimal(value)
        except ValidationError as exc:
            raise ChainOracleError(f"script returned a non-numeric value: {value!r}") from exc

    async def _submit(self, path: str, payload: dict) -> str:
        body = await self._request("POST", self.relay_url + path, json=payload)
        tx_id = body.get("transactionId") if isinstance(body, dict) else None
        if not tx_id:
            raise ChainOracleError(f"relay did not return a transaction id: {body!r}")
        logger.info("Submitted chain transaction path=%s tx_id=%s", path, tx_id)
        return tx_id

    async def _request(self, method: str, url: str, **kwargs):
        return await self.retry_policy.call_async(self._request_once, method, url, **kwargs)

    async def _request_once(self, method: str, url: str, **kwargs):
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.RequestError as exc:
            raise ChainOracleError(f"chain request error: {exc}", transient=True) from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise ChainOracleError(
                f"chain returned {response.status_code}",
                transient=True,
                details={"status": response.status_code, "body": response.text[:500]},
            )
        if response.status_code >= 400:
            raise ChainOracleError(
                f"chain rejected request with {response.status_code}",
                details={"status": response.status_code, "body": response.text[:500]},
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ChainOracleError("chain returned invalid JSON") from exc
