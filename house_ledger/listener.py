from typing import Optional

from pydantic import TypeAdapter
from sqlalchemy.orm import Session, sessionmaker

from house_ledger import models
from house_ledger.chain import ChainOracle
from house_ledger.config import settings
from house_ledger.errors import ValidationError
from house_ledger.events import contract_event_map, event_type_id, from_chain
from house_ledger.logging_config import get_logger
from house_ledger.outbox import DEAD, enqueue_event

logger = get_logger(__name__)

raw_event_adapter = TypeAdapter(dict)


class ChainEventListener:
    """
    Poll the access node for contract events and persist them to the outbox.

    A cursor per event type records the last sealed height read, so a restart
    resumes where it stopped and re-reading a range only hits the outbox's
    duplicate check.
    """

    def __init__(
        self,
        oracle: ChainOracle,
        session_factory: sessionmaker,
        contract_address: str | None = None,
        max_block_range: int | None = None,
        start_height: Optional[int] = None,
    ):
        self.oracle = oracle
        self.session_factory = session_factory
        self.contract_address = contract_address or settings.contract_address
        self.max_block_range = max_block_range or settings.listener_max_block_range
        self.start_height = start_height

    @property
    def event_types(self) -> list[str]:
        return [event_type_id(self.contract_address, name) for name in contract_event_map]

    async def poll_once(self) -> int:
        sealed = await self.oracle.latest_sealed_height()
        enqueued = 0
        for event_type in self.event_types:
            with self.session_factory() as db:
                cursor = db.get(models.ListenerCursor, event_type)
                if cursor is None:
                    first = self.start_height if self.start_height is not None else sealed
                    cursor = models.ListenerCursor(event_type=event_type, last_height=first - 1)
                    db.add(cursor)
                # no transaction stays open across the awaits below
                db.commit()
                start = cursor.last_height + 1
                while start <= sealed:
                    end = min(start + self.max_block_range - 1, sealed)
                    for raw in await self.oracle.get_events(event_type, start, end):
                        enqueued += self._ingest(db, raw)
                    cursor.last_height = end
                    db.add(cursor)
                    db.commit()
                    start = end + 1
        if enqueued:
            logger.info("Listener enqueued %s chain events up to height %s", enqueued, sealed)
        return enqueued

    def _ingest(self, db: Session, raw: dict) -> int:
        try:
            event = from_chain(raw)
        except ValidationError as exc:
            self._park_malformed(db, raw, exc)
            return 0
        _, created = enqueue_event(db, event)
        return int(created)

    def _park_malformed(self, db: Session, raw: dict, exc: Exception):
        key = f"malformed:{raw.get('transaction_id')}:{raw.get('event_index', 0)}"
        if db.query(models.EventOutbox).filter_by(event_key=key).first():
            return
        db.add(models.EventOutbox(
            event_key=key,
            event_type=str(raw.get("type")),
            payload=raw_event_adapter.dump_python(raw, mode="json"),
            status=DEAD,
            last_error=str(exc),
            next_attempt_at=None,
        ))
        db.commit()
        logger.critical("Rejected malformed chain event key=%s error=%s", key, exc)
