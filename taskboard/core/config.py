from functools import lru_cache

from dotenv import load_dotenv
from fastapi import Depends
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Annotated

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    database_url: str = "sqlite+aiosqlite:///./taskboard.db"
    database_echo: bool = False
    create_tables_on_startup: bool = True
    log_level: str = "INFO"

    # auth
    secret_key: str = "change-this"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    refresh_token_expire_days: int = 7
    blacklist_retention_days: int = 30

    # listing / stats
    default_page_size: int = 10
    max_page_size: int = 100
    stats_timezone: str = "UTC"

    # cache
    redis_dsn: str = "redis://localhost:6379/0"  # empty string disables L2
    l1_maxsize: int = 2048
    l1_ttl_seconds: int = 60  # default L1 TTL
    l2_ttl_seconds: int = 300  # default Redis TTL
    stats_ttl_seconds: int = 30
    cache_namespace: str = "taskboard:"
    redis_pool_size: int = 5


@lru_cache
def get_settings() -> Settings:
    return Settings()


SettingsDep = Annotated[Settings, Depends(get_settings)]
