"""
keyledger Application Configuration
====================================

PURPOSE:
    Pydantic-Settings based configuration for the keyledger service.
    All settings can be overridden via environment variables (KEYLEDGER_ prefix).

NOTES:
    cache_ttl_s is the hard cache lifetime; soft_refresh_s is the age after
    which a cached key set is still served but re-fetched in the background.
    batch_chunk_size is kept below the document store's per-transaction
    ceiling (store_batch_limit).
"""

import logging
from typing import Literal, Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Runtime settings for the key lifecycle service."""

    app_name: str = "keyledger"
    debug: bool = False

    # Document store
    store_backend: Literal["sql", "memory"] = "sql"
    database_url: str = "sqlite:///data/keyledger.db"
    store_batch_limit: int = 500   # Hard per-transaction operation ceiling
    batch_chunk_size: int = 450    # Buffered below store_batch_limit

    # Key format
    key_prefix: str = "VORAHUB"

    # Key cache
    cache_ttl_s: int = 600         # 10 minutes hard lifetime
    soft_refresh_s: int = 300      # Background refresh after 5 minutes
    cache_grace_multiplier: int = 2

    # Rate limiting / single-flight
    interaction_cooldown_s: float = 5.0
    inflight_ceiling_s: int = 300  # Abandoned in-flight markers reclaimed after 5 minutes

    # Idle sweeper
    sweep_interval_s: int = 300

    # Issuance / admin limits
    max_issue_count: int = 100
    max_device_limit: int = 100_000_000

    # Admin surface. Admin endpoints refuse every request while unset.
    admin_token: Optional[str] = None

    # Loader script handed out by the panel
    script_url: str = "https://vorahub.xyz/loader"

    # Logging
    log_dir: str = "logs"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "KEYLEDGER_"

    @model_validator(mode="after")
    def _check_windows(self) -> "Settings":
        if self.soft_refresh_s >= self.cache_ttl_s:
            raise ValueError(
                f"soft_refresh_s ({self.soft_refresh_s}) must be shorter than "
                f"cache_ttl_s ({self.cache_ttl_s})"
            )
        if self.batch_chunk_size > self.store_batch_limit:
            raise ValueError(
                f"batch_chunk_size ({self.batch_chunk_size}) exceeds "
                f"store_batch_limit ({self.store_batch_limit})"
            )
        return self


settings = Settings()

logger.info("keyledger store backend: %s", settings.store_backend)
