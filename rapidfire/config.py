"""Настройки приложения Rapid Fire, читаются из окружения и файла .env."""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    database_url: str
    host: str
    port: int
    secret_key: str
    token_ttl_seconds: int
    time_limit_seconds: int
    timeout_grace_seconds: float
    log_level: str
    rate_limit: int
    rate_window_seconds: int
    api_url: str
    resume_file: str
    reconnect_attempts: int
    reconnect_base_delay: float
    reconnect_max_delay: float


@lru_cache
def get_settings() -> Settings:
    return Settings(
        database_url=os.getenv("RAPIDFIRE_DATABASE_URL", "sqlite:///./rapidfire.db"),
        host=os.getenv("RAPIDFIRE_HOST", "0.0.0.0"),
        port=int(os.getenv("RAPIDFIRE_PORT", "8000")),
        secret_key=os.getenv("RAPIDFIRE_SECRET_KEY", "dev-insecure-secret-change-me"),
        token_ttl_seconds=int(os.getenv("RAPIDFIRE_TOKEN_TTL_SECONDS", str(60 * 60 * 24 * 7))),
        time_limit_seconds=int(os.getenv("RAPIDFIRE_TIME_LIMIT_SECONDS", "60")),
        timeout_grace_seconds=float(os.getenv("RAPIDFIRE_TIMEOUT_GRACE_SECONDS", "2")),
        log_level=os.getenv("RAPIDFIRE_LOG_LEVEL", "INFO"),
        rate_limit=int(os.getenv("RAPIDFIRE_RATE_LIMIT", "90")),
        rate_window_seconds=int(os.getenv("RAPIDFIRE_RATE_WINDOW_SECONDS", "60")),
        api_url=os.getenv("RAPIDFIRE_API_URL", "http://127.0.0.1:8000"),
        resume_file=os.getenv("RAPIDFIRE_RESUME_FILE", os.path.expanduser("~/.rapidfire/active_session.json")),
        reconnect_attempts=int(os.getenv("RAPIDFIRE_RECONNECT_ATTEMPTS", "5")),
        reconnect_base_delay=float(os.getenv("RAPIDFIRE_RECONNECT_BASE_DELAY", "0.5")),
        reconnect_max_delay=float(os.getenv("RAPIDFIRE_RECONNECT_MAX_DELAY", "8")),
    )
