import logging
from typing import Any, ClassVar, FrozenSet

from pydantic_settings import BaseSettings, SettingsConfigDict

_logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./pegledger.db"

    # Database pool (applies to client/server DBs like Postgres; SQLite uses NullPool)
    DB_POOL_PRE_PING: bool = True
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_POOL_RECYCLE_SECONDS: int = 1800

    # Database transaction isolation
    # Applied for Postgres connections only.
    DB_POSTGRES_ISOLATION_LEVEL: str = "READ COMMITTED"

    # Redis (optional; serializes sync loops across replicas)
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_ENABLED: bool = False

    # Application
    LOG_LEVEL: str = "INFO"
    DEBUG: bool = False

    # Environment
    # Used for guardrails. Suggested values: dev|staging|prod.
    ENV: str = "dev"

    # Side chain (Elements / Liquid) node
    LIQUID_RPC_URL: str = "http://127.0.0.1:7041"
    LIQUID_RPC_USER: str = "liquid"
    LIQUID_RPC_PASSWORD: str = ""

    # Base chain (Bitcoin Core) node
    BITCOIN_RPC_URL: str = "http://127.0.0.1:8332"
    BITCOIN_RPC_USER: str = "bitcoin"
    BITCOIN_RPC_PASSWORD: str = ""

    RPC_TIMEOUT_SECONDS: float = 30.0

    # L-BTC asset id on Liquid mainnet. Burns of this asset count as peg-outs.
    LIQUID_NATIVE_ASSET_ID: str = "6f0279e9ed041c3d710a9f57d0c02928416460c4b722ae3457a11eec381c526d"

    # Comma-separated federation change addresses on the base chain.
    FEDERATION_CHANGE_ADDRESSES: str = (
        "bc1qxvay4an52gcghxq5lavact7r6qe9l4laedsazz8fj2ee2cy47tlqff4aj4,"
        "3EiAcrzq1cELXScc98KeCswGWZaPGceT1d"
    )

    # Federation audit
    AUDIT_CONFIRMATION_OFFSET: int = 1
    AUDIT_FAST_PATH_WINDOW: int = 150
    AUDIT_MAX_HEADER_LAG: int = 2
    AUDIT_MAX_CURSOR_LAG: int = 3

    # Progress cursor baselines (used only when the progress rows are first created)
    PEG_SCANNER_START_HEIGHT: int = 0
    AUDIT_START_HEIGHT: int = 0

    # Background sync loops
    PEG_SCANNER_ENABLED: bool = True
    PEG_SCANNER_INTERVAL_SECONDS: int = 60
    FEDERATION_AUDIT_ENABLED: bool = True
    FEDERATION_AUDIT_INTERVAL_SECONDS: int = 60
    # Redis lock TTL for a sync loop run. 0 = auto (max(30, interval)).
    SYNC_LOCK_TTL_SECONDS: int = 0

    # Rate limiting (in-memory, best-effort)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_REQUESTS_PER_WINDOW: int = 120

    # Observability
    METRICS_ENABLED: bool = True

    # Admin API
    # NOTE: This default is intentionally insecure and must never be used outside dev/test.
    DEFAULT_ADMIN_TOKEN: ClassVar[str] = "dev-admin-token-change-me"
    ADMIN_TOKEN: str = DEFAULT_ADMIN_TOKEN

    # --- Guardrails ---
    _SAFE_ENVS: ClassVar[FrozenSet[str]] = frozenset({"dev", "development", "test", "testing"})
    _UNSAFE_PLACEHOLDERS: ClassVar[FrozenSet[str]] = frozenset(
        {
            "change-me-in-production",
            "change-me",
            "changeme",
            "",
        }
    )

    def model_post_init(self, __context: Any) -> None:
        self._guardrail_default_secrets()

    @property
    def federation_change_addresses(self) -> frozenset[str]:
        return frozenset(
            a.strip() for a in (self.FEDERATION_CHANGE_ADDRESSES or "").split(",") if a.strip()
        )

    def _guardrail_default_secrets(self) -> None:
        env = (self.ENV or "").strip().lower()
        if env in self._SAFE_ENVS:
            return

        admin_token = (self.ADMIN_TOKEN or "").strip()
        vl = admin_token.lower()
        if (
            admin_token == self.DEFAULT_ADMIN_TOKEN
            or vl in self._UNSAFE_PLACEHOLDERS
            or "change-me" in vl
        ):
            raise RuntimeError(
                "Refusing to start with insecure default/placeholder secrets outside dev/test: "
                "ADMIN_TOKEN. "
                f"Got ENV={self.ENV!r}. "
                "Set a secure value via the ADMIN_TOKEN environment variable, "
                "or run with ENV=dev/test."
            )


settings = Settings()

