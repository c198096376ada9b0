import os
import sys
from decimal import Decimal
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("BACKGROUND_WORKERS_ENABLED", "false")
os.environ.setdefault("HMAC_SECRET", "test-secret")

from house_ledger import models  # noqa: E402,F401
from house_ledger.chain import ChainOracle  # noqa: E402
from house_ledger.database import Base, make_engine, make_session_factory  # noqa: E402
from house_ledger.errors import ChainOracleError  # noqa: E402
from house_ledger.ledger import BalanceLedger  # noqa: E402
from house_ledger.retry import RetryPolicy  # noqa: E402


class FakeOracle(ChainOracle):
    """In-memory chain: balances are set directly by the test."""

    def __init__(self):
        self.vault_balance = Decimal(0)
        self.vault_error: ChainOracleError | None = None
        self.user_balances: dict[str, Decimal] = {}
        self.unreachable: set[str] = set()
        self.bet_error: ChainOracleError | None = None
        self.bets: list[dict] = []
        self.settlement_error: ChainOracleError | None = None
        self.settlements: list[dict] = []
        self.sealed_height = 0
        self.events: list[dict] = []
        self.event_queries: list[tuple] = []
        self.closed = False

    async def query_vault_balance(self, vault_address):
        if self.vault_error:
            raise self.vault_error
        return self.vault_balance

    async def query_user_authoritative_balance(self, user_address):
        if user_address in self.unreachable:
            raise ChainOracleError("chain unreachable", transient=True)
        return self.user_balances.get(user_address, Decimal(0))

    async def submit_bet_registration(self, player, bet_amount, bet_reference, details=None):
        if self.bet_error:
            raise self.bet_error
        self.bets.append({"player": player, "betAmount": bet_amount, "betId": bet_reference, "details": details})
        return f"tx-bet-{len(self.bets)}"

    async def submit_settlement(self, player, bet_reference, won, payout):
        if self.settlement_error:
            raise self.settlement_error
        self.settlements.append({"player": player, "betId": bet_reference, "won": won, "payout": payout})
        return f"tx-settle-{len(self.settlements)}"

    async def latest_sealed_height(self):
        return self.sealed_height

    async def get_events(self, event_type, start_height, end_height):
        self.event_queries.append((event_type, start_height, end_height))
        return [
            e for e in self.events
            if e["type"] == event_type and start_height <= e["block_height"] <= end_height
        ]

    async def aclose(self):
        self.closed = True


def no_wait_policy(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, backoff_seconds=0, jitter=False, sleep=lambda _: None)


@pytest.fixture
def engine(tmp_path):
    """A disposable SQLite file database with the full schema."""
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def ledger(session_factory):
    return BalanceLedger(session_factory, retry_policy=no_wait_policy())


@pytest.fixture
def oracle():
    return FakeOracle()
