from functools import lru_cache
from typing import Dict, List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_ENV: str = "dev"
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    DATABASE_URL: str = "sqlite+aiosqlite:///./trailscope.db"
    # empty -> reads go to the primary
    REPLICA_DATABASE_URL: str = ""

    # domain whose event logs live in DATABASE_URL
    LOCAL_DOMAIN: str = "default"

    CIDR_LIMIT_IPV4: int = 16
    CIDR_LIMIT_IPV6: int = 19

    RETENTION_DAYS: int = 90
    DOMAIN_RETENTION_DAYS: Dict[str, int] = {}

    PURGE_BATCH_SIZE: int = 500
    CENTRAL_INDEX_PURGE_BATCH: int = 100
    PURGE_LOCK_TIMEOUT_SEC: int = 60
    ORPHAN_MAP_SCAN_LIMIT: int = 100
    ORPHAN_VALUE_BATCH: int = 500

    CENTRAL_INDEX_GROUPS_TO_EXCLUDE: List[str] = []
    CENTRAL_INDEX_RANGES_TO_EXCLUDE: List[str] = []

    RETENTION_CRON_HOUR: int = 3
    RETENTION_CRON_MINUTE: int = 30

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def retention_days_for(self, domain: str) -> int:
        return int(self.DOMAIN_RETENTION_DAYS.get(domain, self.RETENTION_DAYS))

    def replica_url(self) -> str:
        return self.REPLICA_DATABASE_URL or self.DATABASE_URL


@lru_cache
def get_settings() -> Settings:
    return Settings()
