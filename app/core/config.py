import os
from datetime import timedelta
from functools import lru_cache
from typing import List

from dotenv import load_dotenv

load_dotenv()


class ConfigError(RuntimeError):
    pass


def _env_str(key: str, default: str) -> str:
    value = os.getenv(key, "").strip()
    return value or default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key, "").strip().lower()
    if value in {"1", "true", "t", "yes"}:
        return True
    if value in {"0", "false", "f", "no"}:
        return False
    return default


class Settings:
    def __init__(self) -> None:
        self.APP_NAME: str = _env_str("APP_NAME", "MoveOps API")
        self.API_ADDR: str = _env_str("API_ADDR", ":8080")
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "").strip()
        if not self.DATABASE_URL:
            raise ConfigError("DATABASE_URL is required")
        self.APP_ENV: str = _env_str("APP_ENV", "dev")
        self.LOG_LEVEL: str = _env_str("LOG_LEVEL", "INFO").upper()

        self.SESSION_COOKIE_NAME: str = _env_str("SESSION_COOKIE_NAME", "mo_sess")
        self.SESSION_TTL_HOURS: int = _env_int("SESSION_TTL_HOURS", 12)
        self.COOKIE_SECURE: bool = _env_bool("COOKIE_SECURE", False)
        if self.APP_ENV.lower() == "prod":
            self.COOKIE_SECURE = True
        self.CSRF_ENFORCE: bool = _env_bool("CSRF_ENFORCE", True)

        default_cors = "http://localhost:3000,http://127.0.0.1:3000"
        self.CORS_ALLOWED_ORIGINS: List[str] = [
            origin.strip()
            for origin in _env_str("CORS_ALLOWED_ORIGINS", default_cors).split(",")
            if origin.strip()
        ]

        self.API_MAX_BODY_MB: int = _env_int("API_MAX_BODY_MB", 2)
        self.IMPORT_MAX_FILE_MB: int = _env_int("IMPORT_MAX_FILE_MB", 25)
        self.IMPORT_MAX_ROWS: int = _env_int("IMPORT_MAX_ROWS", 5000)

        self.API_READ_HEADER_TIMEOUT_SEC: int = _env_int("API_READ_HEADER_TIMEOUT_SEC", 5)
        self.API_READ_TIMEOUT_SEC: int = _env_int("API_READ_TIMEOUT_SEC", 15)
        self.API_WRITE_TIMEOUT_SEC: int = _env_int("API_WRITE_TIMEOUT_SEC", 30)
        self.API_IDLE_TIMEOUT_SEC: int = _env_int("API_IDLE_TIMEOUT_SEC", 60)

        self.RATE_LIMIT_MAX_IPS: int = _env_int("RATE_LIMIT_MAX_IPS", 10000)

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(hours=self.SESSION_TTL_HOURS)

    @property
    def max_body_bytes(self) -> int:
        return self.API_MAX_BODY_MB * 1024 * 1024

    @property
    def import_max_file_bytes(self) -> int:
        return self.IMPORT_MAX_FILE_MB * 1024 * 1024

    @property
    def is_production(self) -> bool:
        return self.APP_ENV.lower() in {"prod", "production"}

    @property
    def host(self) -> str:
        host, _, _ = self.API_ADDR.rpartition(":")
        return host or "0.0.0.0"

    @property
    def port(self) -> int:
        _, _, port = self.API_ADDR.rpartition(":")
        try:
            return int(port)
        except ValueError:
            return 8080


@lru_cache
def get_settings() -> Settings:
    return Settings()
