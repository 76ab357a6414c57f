from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()
_PROJECT_ROOT = _BACKEND_DIR.parent.resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"


class Settings(BaseSettings):
    # Ledger RPC endpoints
    SOLANA_RPC_URL: str = "https://api.mainnet-beta.solana.com"
    SOLANA_RPC_FALLBACK_URLS: list[str] = [
        "https://solana-api.projectserum.com",
        "https://rpc.ankr.com/solana",
        "https://solana-mainnet.rpcpool.com",
    ]

    # Enhanced transaction API (poll channel) and transaction stream (push channel)
    HELIUS_API_KEY: str = ""
    HELIUS_API_URL: str = "https://api.helius.xyz"
    HELIUS_WS_URL: str = "wss://atlas-mainnet.helius-rpc.com"
    HELIUS_WEBHOOK_AUTH_HEADER: str = ""  # expected Authorization value on webhook posts; empty disables the check

    # Resource Gateway
    RPC_POOL_SIZE: int = 4  # 0 = derive from endpoint count (3..8)
    RPC_CONNECTION_FAILURE_LIMIT: int = 3
    RPC_CONNECTION_COOLDOWN_SECONDS: float = 30.0
    RPC_REQUEST_TIMEOUT_SECONDS: float = 8.0
    RPC_SLOW_REQUEST_MS: float = 1000.0
    RPC_VERY_SLOW_REQUEST_MS: float = 5000.0
    RPC_METRICS_WINDOW_SECONDS: float = 300.0
    RPC_MAX_RETRIES: int = 3
    BATCH_FLUSH_INTERVAL_MS: float = 25.0
    BATCH_MAX_SIZE: int = 100

    # Execution providers (primary = Jupiter, secondary = Raydium)
    JUPITER_API_URL: str = "https://lite-api.jup.ag/swap/v1"
    RAYDIUM_SWAP_HOST: str = "https://transaction-v1.raydium.io"
    RAYDIUM_API_HOST: str = "https://api-v3.raydium.io"
    RAYDIUM_PRIORITY_LEVEL: str = "h"  # vh | h | m
    PROVIDER_TIMEOUT_SECONDS: float = 5.0
    PROVIDER_REQUESTS_PER_SECOND: float = 2.0
    PROVIDER_MAX_RETRIES: int = 2

    # Provider circuit breaker
    BREAKER_FAILURE_THRESHOLD: int = 5
    BREAKER_FAILURE_WINDOW_SECONDS: float = 120.0
    BREAKER_COOLDOWN_SECONDS: float = 60.0

    # Order execution
    DEFAULT_SLIPPAGE_BPS: int = 50
    MAX_SLIPPAGE_BPS: int = 5000
    MAX_PRICE_IMPACT_BPS: Optional[int] = None  # absolute ceiling on top of the intent's bound
    PRICE_IMPACT_WARN_BPS: int = 100  # reported as a warning on successful orders
    QUOTE_TTL_SECONDS: float = 20.0
    MAX_REQUOTES: int = 1
    CONFIRMATION_POLL_INTERVAL_SECONDS: float = 2.0
    CONFIRMATION_MAX_POLLS: int = 20
    PLATFORM_FEE_BPS: int = 100  # 1%
    NETWORK_BASE_FEE_LAMPORTS: int = 5000
    FAILED_ORDER_TTL_SECONDS: float = 3600.0

    # Wallet activity monitoring
    MONITOR_POLL_INTERVAL_SECONDS: float = 5.0
    MONITOR_POLL_LIMIT: int = 10
    MONITOR_SEEN_CAPACITY: int = 1000
    MONITOR_RECONNECT_DELAY_SECONDS: float = 5.0
    MONITOR_MAX_RECONNECT_DELAY_SECONDS: float = 60.0
    MONITOR_DEGRADED_AFTER_FAILURES: int = 5
    MONITOR_PING_INTERVAL_SECONDS: float = 30.0
    MONITOR_MIN_PAID_AMOUNT: float = 0.0001  # smaller base decreases are fee/rent dust
    MONITOR_REORDER_HOLD_MS: float = 750.0

    # Database
    DATABASE_URL: str = f"{_SQLITE_ASYNC_PREFIX}./data/copytrade.db"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    CORS_ORIGINS: list[str] = ["*"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    @field_validator(
        "SOLANA_RPC_URL",
        "HELIUS_API_URL",
        "HELIUS_WS_URL",
        "JUPITER_API_URL",
        "RAYDIUM_SWAP_HOST",
        "RAYDIUM_API_HOST",
        mode="before",
    )
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        return text.rstrip("/")

    @field_validator("RAYDIUM_PRIORITY_LEVEL")
    @classmethod
    def _validate_priority_level(cls, value: str) -> str:
        if value not in ("vh", "h", "m"):
            raise ValueError("RAYDIUM_PRIORITY_LEVEL must be one of vh, h, m")
        return value

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Resolve relative SQLite paths against the project root."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text.startswith(_SQLITE_ASYNC_PREFIX):
            return text
        path_part = text[len(_SQLITE_ASYNC_PREFIX) :]
        if not path_part or path_part in {":memory:", "/:memory:"}:
            return f"{_SQLITE_ASYNC_PREFIX}:memory:"
        absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
        absolute.parent.mkdir(parents=True, exist_ok=True)
        return f"{_SQLITE_ASYNC_PREFIX}{absolute}"

    @property
    def rpc_endpoints(self) -> list[str]:
        """Primary endpoint first, then fallbacks, without duplicates."""
        endpoints: list[str] = []
        for url in [self.SOLANA_RPC_URL, *self.SOLANA_RPC_FALLBACK_URLS]:
            url = str(url or "").strip().rstrip("/")
            if url and url not in endpoints:
                endpoints.append(url)
        return endpoints

    @property
    def rpc_pool_size(self) -> int:
        if self.RPC_POOL_SIZE > 0:
            return self.RPC_POOL_SIZE
        return max(3, min(len(self.rpc_endpoints), 8))

    class Config:
        # Load project-root .env first, then backend/.env as an override if present.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
