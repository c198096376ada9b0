import asyncio
import base64
import json
from decimal import Decimal

import httpx
import pytest

from house_ledger.chain import ChainOracle, FlowChainOracle, cadence_to_python, encode_argument
from house_ledger.errors import ChainOracleError
from house_ledger.retry import RetryPolicy


async def _no_sleep(_):
    return None


def _oracle(handler, max_attempts=3):
    return FlowChainOracle(
        access_node_url="http://access.test",
        relay_url="http://relay.test/relay",
        contract_address="0xf8d6e0586b0a20c7",
        retry_policy=RetryPolicy(max_attempts=max_attempts, backoff_seconds=0, jitter=False, async_sleep=_no_sleep),
        transport=httpx.MockTransport(handler),
    )


def _run(oracle, coro_fn):
    async def scenario():
        try:
            return await coro_fn(oracle)
        finally:
            await oracle.aclose()

    return asyncio.run(scenario())


def _ufix64(value: str) -> str:
    return encode_argument({"type": "UFix64", "value": value})


def test_vault_balance_script():
    seen = {}

    def handler(request: httpx.Request):
        body = json.loads(request.content)
        seen["path"] = request.url.path
        seen["script"] = base64.b64decode(body["script"]).decode()
        seen["argument"] = json.loads(base64.b64decode(body["arguments"][0]))
        return httpx.Response(200, json=_ufix64("1234.50000000"))

    balance = _run(_oracle(handler), lambda o: o.query_vault_balance("0x01cf0e2f2f715450"))

    assert balance == Decimal("1234.50000000")
    assert seen["path"] == "/v1/scripts"
    assert "OverflowGameEscrowVault" in seen["script"]
    assert seen["argument"] == {"type": "Address", "value": "0x01cf0e2f2f715450"}


def test_user_balance_script():
    def handler(request: httpx.Request):
        script = base64.b64decode(json.loads(request.content)["script"]).decode()
        assert "getUserBalance" in script
        return httpx.Response(200, json=_ufix64("10.00000000"))

    assert _run(_oracle(handler), lambda o: o.query_user_authoritative_balance("0xabc")) == Decimal("10")


def test_server_errors_are_retried():
    statuses = [500, 503, 200]
    calls = {"count": 0}

    def handler(request: httpx.Request):
        status = statuses[calls["count"]]
        calls["count"] += 1
        if status != 200:
            return httpx.Response(status, text="unavailable")
        return httpx.Response(200, json=_ufix64("5.00000000"))

    assert _run(_oracle(handler), lambda o: o.query_vault_balance("0xabc")) == Decimal("5")
    assert calls["count"] == 3


def test_client_errors_are_not_retried():
    calls = {"count": 0}

    def handler(request: httpx.Request):
        calls["count"] += 1
        return httpx.Response(400, json={"message": "invalid script"})

    with pytest.raises(ChainOracleError) as excinfo:
        _run(_oracle(handler), lambda o: o.query_vault_balance("0xabc"))
    assert calls["count"] == 1
    assert not excinfo.value.retryable
    assert excinfo.value.details["status"] == 400


def test_connection_errors_are_transient():
    calls = {"count": 0}

    def handler(request: httpx.Request):
        calls["count"] += 1
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ChainOracleError) as excinfo:
        _run(_oracle(handler, max_attempts=2), lambda o: o.query_user_authoritative_balance("0xabc"))
    assert calls["count"] == 2
    assert excinfo.value.retryable


def test_submit_bet_registration_uses_relay():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"transactionId": "abc123"})

    tx_id = _run(
        _oracle(handler),
        lambda o: o.submit_bet_registration("0xabc", Decimal("2.5"), "bet-1", {"roundId": 3}),
    )

    assert tx_id == "abc123"
    assert seen["url"] == "http://relay.test/relay/bets"
    assert seen["body"] == {"player": "0xabc", "betAmount": "2.5", "betId": "bet-1", "details": {"roundId": 3}}


def test_submit_without_transaction_id_fails():
    def handler(request: httpx.Request):
        return httpx.Response(200, json={"status": "queued"})

    with pytest.raises(ChainOracleError):
        _run(_oracle(handler), lambda o: o.submit_settlement("0xabc", "bet-1", True, Decimal("4")))


def test_sealed_height_and_events():
    event_type = "A.f8d6e0586b0a20c7.OverflowGame.Deposit"
    payload = {
        "type": "Event",
        "value": {
            "id": event_type,
            "fields": [
                {"name": "userAddress", "value": {"type": "Address", "value": "0xabc"}},
                {"name": "amount", "value": {"type": "UFix64", "value": "3.00000000"}},
            ],
        },
    }

    def handler(request: httpx.Request):
        if request.url.path == "/v1/blocks":
            return httpx.Response(200, json=[{"header": {"height": "120"}}])
        assert request.url.params["type"] == event_type
        assert request.url.params["start_height"] == "100"
        return httpx.Response(200, json=[{
            "block_height": "110",
            "events": [{
                "type": event_type,
                "transaction_id": "tx-9",
                "event_index": "1",
                "payload": encode_argument(payload),
            }],
        }])

    async def scenario(oracle):
        return await oracle.latest_sealed_height(), await oracle.get_events(event_type, 100, 120)

    height, events = _run(_oracle(handler), scenario)

    assert height == 120
    assert events == [{
        "type": event_type,
        "transaction_id": "tx-9",
        "event_index": 1,
        "block_height": 110,
        "data": {"userAddress": "0xabc", "amount": Decimal("3.00000000")},
    }]


def test_cadence_values():
    assert cadence_to_python({"type": "Optional", "value": None}) is None
    assert cadence_to_python({"type": "UInt64", "value": "7"}) == 7
    assert cadence_to_python({"type": "Bool", "value": True}) is True
    with pytest.raises(ChainOracleError):
        cadence_to_python({"type": "Dictionary", "value": []})


def test_oracle_must_implement_event_reads():
    class BalancesOnly(ChainOracle):
        async def query_vault_balance(self, vault_address):
            return Decimal(0)

        async def query_user_authoritative_balance(self, user_address):
            return Decimal(0)

        async def submit_bet_registration(self, player, bet_amount, bet_reference, details=None):
            return "tx"

        async def submit_settlement(self, player, bet_reference, won, payout):
            return "tx"

    with pytest.raises(TypeError):
        BalancesOnly()
