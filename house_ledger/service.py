import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from house_ledger.chain import ChainOracle, FlowChainOracle
from house_ledger.config import OperationType, settings
from house_ledger.errors import ChainOracleError
from house_ledger.ledger import BalanceLedger
from house_ledger.listener import ChainEventListener
from house_ledger.logging_config import get_logger
from house_ledger.models import utcnow
from house_ledger.outbox import process_outbox
from house_ledger.reconciliation import ReconciliationEngine
from house_ledger.sync import SyncChecker

logger = get_logger(__name__)


class SupervisedTask:
    """
    A named background loop with an explicit start/stop/status lifecycle.

    A failing iteration is logged and counted, and the loop carries on after
    the usual interval.
    """

    def __init__(self, name: str, step: Callable[[], Awaitable], interval_seconds: float):
        self.name = name
        self.step = step
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self.iterations = 0
        self.failures = 0
        self.last_error: Optional[str] = None
        self.last_run_at: Optional[datetime] = None
        self.started_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if self.running:
            return False
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"supervised-{self.name}")
        self.started_at = utcnow()
        logger.info("Started %s task interval=%ss", self.name, self.interval_seconds)
        return True

    async def stop(self) -> bool:
        if not self.running:
            return False
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped %s task after %s iterations", self.name, self.iterations)
        return True

    def status(self) -> dict:
        return {
            "name": self.name,
            "running": self.running,
            "intervalSeconds": self.interval_seconds,
            "iterations": self.iterations,
            "failures": self.failures,
            "lastError": self.last_error,
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
        }

    async def _run(self):
        while True:
            try:
                await self.step()
                self.last_error = None
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self.failures += 1
                self.last_error = str(exc)
                logger.exception("%s task iteration failed", self.name)
            self.iterations += 1
            self.last_run_at = utcnow()
            await asyncio.sleep(self.interval_seconds)


class LedgerService:
    """
    Process-wide owner of the ledger, its chain-facing engines and the
    background tasks that drive them.
    """

    def __init__(self, session_factory: sessionmaker, oracle: ChainOracle, ledger: BalanceLedger | None = None):
        self.session_factory = session_factory
        self.oracle = oracle
        self.ledger = ledger or BalanceLedger(session_factory)
        self.reconciler = ReconciliationEngine(self.ledger, oracle)
        self.sync_checker = SyncChecker(self.ledger, oracle, reconciler=self.reconciler)
        self.listener = ChainEventListener(oracle, session_factory)
        self.tasks: Dict[str, SupervisedTask] = {
            "sync": SupervisedTask("sync", self.sync_checker.check_sync, settings.sync_interval_seconds),
            "outbox": SupervisedTask("outbox", self.drain_outbox, settings.outbox_poll_seconds),
            "listener": SupervisedTask("listener", self.listener.poll_once, settings.listener_poll_seconds),
        }

    @classmethod
    def from_settings(cls) -> "LedgerService":
        from house_ledger.database import SessionLocal

        return cls(SessionLocal, FlowChainOracle())

    async def drain_outbox(self) -> dict:
        with self.session_factory() as db:
            return await process_outbox(db, self.ledger)

    def start(self):
        for task in self.tasks.values():
            task.start()

    async def stop(self):
        for task in self.tasks.values():
            await task.stop()

    async def aclose(self):
        await self.stop()
        await self.oracle.aclose()

    def status(self) -> dict:
        return {name: task.status() for name, task in self.tasks.items()}

    async def place_bet(
        self, address: str, amount: Decimal, bet_reference: str, details: Optional[dict] = None
    ) -> Tuple[Decimal, str]:
        """
        Debit the stake off-chain, then register the bet on chain.

        The two steps are not atomic. If registration fails after the debit,
        the divergence is logged at critical severity and left for
        reconciliation; no compensating credit is issued.
        """
        remaining = await asyncio.to_thread(self.ledger.debit_for_bet, address, amount, bet_reference)
        try:
            tx_id = await self.oracle.submit_bet_registration(address, amount, bet_reference, details)
        except ChainOracleError as exc:
            logger.critical(
                "Balance debited but on-chain bet registration failed address=%s amount=%s bet_id=%s error=%s",
                address,
                amount,
                bet_reference,
                exc,
            )
            raise
        return remaining, tx_id

    async def settle_payout(
        self, address: str, amount: Decimal, bet_reference: str
    ) -> Tuple[Decimal, Optional[str]]:
        """
        Credit a winning payout, then submit the settlement on chain.

        A payout already credited under ``bet_reference``, for example from a
        ``RoundSettled`` event, is not credited or submitted again and returns
        no transaction id. A failed submission keeps the credit and is logged
        at critical severity for reconciliation.
        """
        balance, applied = await asyncio.to_thread(
            self.ledger.apply, OperationType.BET_WON, address, amount, bet_reference
        )
        if not applied:
            return balance, None
        try:
            tx_id = await self.oracle.submit_settlement(address, bet_reference, True, amount)
        except ChainOracleError as exc:
            logger.critical(
                "Payout credited but on-chain settlement failed address=%s amount=%s bet_id=%s error=%s",
                address,
                amount,
                bet_reference,
                exc,
            )
            raise
        return balance, tx_id
