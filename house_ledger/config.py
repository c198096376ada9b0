from decimal import Decimal
from enum import Enum
from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class DriftPolicy(str, Enum):
    ALERT = "alert"
    DRY_RUN = "dry_run"
    RECONCILE = "reconcile"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    db_url: str = "sqlite:///./house_ledger.db"
    bearer_token: Optional[str] = None
    hmac_secret: str = "change_secret"
    timestamp_skew_seconds: int = 5

    flow_access_node_url: AnyHttpUrl = "http://mock-chain:8888"
    chain_relay_url: AnyHttpUrl = "http://mock-chain:8888/relay"
    contract_address: str = "0xf8d6e0586b0a20c7"
    vault_address: str = "0xf8d6e0586b0a20c7"
    chain_timeout_seconds: float = 10.0

    max_retries: int = 3
    retry_backoff_seconds: float = 0.1
    retry_max_backoff_seconds: float = 2.0
    transaction_timeout_seconds: float = 5.0

    sync_interval_seconds: float = 300.0
    sync_tolerance: Decimal = Decimal("0.00000001")
    drift_policy: DriftPolicy = DriftPolicy.ALERT
    system_admin_id: str = "SYSTEM"

    outbox_poll_seconds: float = 2.0
    outbox_max_attempts: int = 8
    listener_poll_seconds: float = 5.0
    listener_max_block_range: int = 250
    background_workers_enabled: bool = True

    log_level: str = "INFO"

settings = Settings()

SYSTEM_ADDRESS = "SYSTEM"
DEFAULT_ADMIN_ID = "ADMIN"


class OperationType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    BET_PLACED = "bet_placed"
    BET_WON = "bet_won"
    BET_LOST = "bet_lost"
    SYNC_CHECK = "sync_check"
    RECONCILIATION = "reconciliation"

# sign applied to the audit amount for each balance-changing operation
operation_sign_map = {
    OperationType.DEPOSIT: 1,
    OperationType.BET_WON: 1,
    OperationType.WITHDRAWAL: -1,
    OperationType.BET_PLACED: -1,
    OperationType.BET_LOST: 0,
}
