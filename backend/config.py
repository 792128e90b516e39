import logging
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "indexer.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"
_LOGGER = logging.getLogger(__name__)


class Settings(BaseSettings):
    # Swap feed (external DEX-trade indexing API)
    SWAP_FEED_URL: str = "https://swap-feed.example.com/v1"
    SWAP_FEED_API_KEY: Optional[str] = None
    SWAP_FEED_PAGE_SIZE: int = 500
    SWAP_FEED_MAX_PAGES: int = 200  # Hard ceiling per token per run
    SWAP_FEED_REQUESTS_PER_SECOND: float = 5.0
    SWAP_FEED_TIMEOUT_SECONDS: float = 30.0

    # Holder discovery APIs (optional; transfer-log scan works without them)
    ZERION_API_URL: str = "https://api.zerion.io/v1"
    ZERION_API_KEY: Optional[str] = None
    ZAPPER_API_URL: str = "https://api.zapper.fi/v2"
    ZAPPER_API_KEY: Optional[str] = None
    CHAIN_NAME: str = "base"

    # Trigger credentials
    CRON_SECRET: Optional[str] = None  # Scheduled origin (Bearer token)
    SYNC_PASSWORD: Optional[str] = None  # Manual origin; empty = open
    ADMIN_MODE_ENABLED: bool = False  # Gates admin surfaces (status, token add)

    # Sync orchestration
    SYNC_FETCH_WEIGHT: float = 40.0  # Share of overall progress for fetching
    SYNC_PERSIST_WEIGHT: float = 40.0  # Share for persist + ledger fold
    SYNC_DISCOVERY_WEIGHT: float = 20.0  # Share for holder discovery
    SYNC_FETCH_PROGRESS_TARGET: int = 10000  # Swap count treated as "fetch nearly done"
    SYNC_MAX_PARALLEL_TOKENS: int = 1  # 1 = tokens fetched sequentially
    SYNC_PERSIST_BATCH_SIZE: int = 50
    SYNC_REQUEST_WAIT_SECONDS: float = 50.0  # HTTP trigger wait before "likely still running"
    SYNC_INTERVAL_MINUTES: int = 720
    SYNC_RUN_MAX_ATTEMPTS: int = 3  # Whole-run retries on connectivity failures
    SYNC_HEARTBEAT_SECONDS: float = 15.0  # How often a live run refreshes indexer_runs.heartbeat_at
    SYNC_RUN_STALE_SECONDS: float = 120.0  # A running row without a heartbeat this long is abandoned

    # Ledger
    DEFAULT_TOKEN_DECIMALS: int = 18
    USD_DECIMAL_PLACES: int = 12

    # Status sink
    RUN_LOG_BUFFER_SIZE: int = 500

    # Database - canonical path under project-root data directory
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"

    # Production Settings
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    CORS_ORIGINS: list[str] = ["*"]

    # API Settings
    API_TIMEOUT_SECONDS: int = 30
    MAX_RETRY_ATTEMPTS: int = 4
    RETRY_BASE_DELAY: float = 1.0

    @field_validator(
        "SWAP_FEED_URL",
        "ZERION_API_URL",
        "ZAPPER_API_URL",
        mode="before",
    )
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text
        return text.rstrip("/")

    @field_validator(
        "SWAP_FEED_API_KEY",
        "ZERION_API_KEY",
        "ZAPPER_API_KEY",
        "CRON_SECRET",
        "SYNC_PASSWORD",
        mode="before",
    )
    @classmethod
    def _blank_secret_is_unset(cls, value: object) -> object:
        """Treat empty/whitespace secrets as not configured."""
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator(
        "SYNC_FETCH_WEIGHT",
        "SYNC_PERSIST_WEIGHT",
        "SYNC_DISCOVERY_WEIGHT",
    )
    @classmethod
    def _weight_not_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("phase weights must be non-negative")
        return value

    @field_validator("USD_DECIMAL_PLACES")
    @classmethod
    def _usd_precision_floor(cls, value: int) -> int:
        if value < 8:
            raise ValueError("USD_DECIMAL_PLACES must be at least 8")
        return value

    @field_validator("SYNC_HEARTBEAT_SECONDS", "SYNC_RUN_STALE_SECONDS")
    @classmethod
    def _positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("heartbeat intervals must be positive")
        return float(value)

    @field_validator("SYNC_MAX_PARALLEL_TOKENS", "SWAP_FEED_PAGE_SIZE", "SWAP_FEED_MAX_PAGES")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        return max(1, int(value))

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Normalize DB URL so worker cwd changes never split databases."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        # Convert relative SQLite paths to absolute project-root paths.
        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:"
            absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
            try:
                absolute.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                _LOGGER.warning("Cannot create SQLite directory %s: %s", absolute.parent, exc)
            return f"{prefix}{absolute}"

        return text

    class Config:
        # Load project-root .env first (common workflow), then backend/.env
        # as an override if present.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"


settings = Settings()
