import os
from dataclasses import dataclass
from typing import Optional

API_VERSION = "2025-04"
PAGE_SIZE = 250
BACKFILL_LIMIT = 1000


def _env_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    database_url: str = "sqlite:///storesync.db"
    api_version: str = API_VERSION
    page_size: int = PAGE_SIZE
    order_status_filter: str = "any"
    default_webhook_secret: Optional[str] = None
    admin_api_key: Optional[str] = None
    base_url: Optional[str] = None
    sync_interval_minutes: int = 15
    scheduler_enabled: bool = False
    backfill_limit: int = BACKFILL_LIMIT
    request_timeout: int = 30
    max_retries: int = 5
    raw_event_log: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///storesync.db"),
            api_version=os.getenv("API_VERSION", API_VERSION),
            page_size=int(os.getenv("API_PAGE_SIZE", PAGE_SIZE)),
            order_status_filter=os.getenv("ORDER_STATUS_FILTER", "any"),
            default_webhook_secret=os.getenv("SHOPIFY_WEBHOOK_SECRET"),
            admin_api_key=os.getenv("ADMIN_API_KEY"),
            base_url=os.getenv("BASE_URL"),
            sync_interval_minutes=int(os.getenv("SYNC_INTERVAL_MINUTES", 15)),
            scheduler_enabled=_env_bool("SCHEDULER_ENABLED", False),
            backfill_limit=int(os.getenv("BACKFILL_LIMIT", BACKFILL_LIMIT)),
            request_timeout=int(os.getenv("REQUEST_TIMEOUT", 30)),
            max_retries=int(os.getenv("API_MAX_RETRIES", 5)),
            raw_event_log=_env_bool("RAW_EVENT_LOG", True),
        )
