from __future__ import annotations

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

load_dotenv()

DEFAULT_TOOLCHAIN_PROBE = ["rustup", "run", "{toolchain}", "rustc", "--version"]
DEFAULT_TOOLCHAIN_LAUNCHER = ["rustup", "run", "{toolchain}"]
DEFAULT_HTTP_TIMEOUT = 10.0


class Settings(BaseSettings):
    config_source: str = Field(default="checks.yaml", alias="CHECKS_CONFIG")
    max_parallel: int = Field(default=0, ge=0, alias="CHECKS_MAX_PARALLEL")
    run_timeout: float | None = Field(default=None, gt=0, alias="CHECKS_RUN_TIMEOUT")
    kill_grace_seconds: float = Field(default=5.0, ge=0, alias="CHECKS_KILL_GRACE_SECONDS")
    log_level: str = Field(default="INFO", alias="CHECKS_LOG_LEVEL")
    toolchain_probe: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TOOLCHAIN_PROBE), alias="CHECKS_TOOLCHAIN_PROBE"
    )
    toolchain_launcher: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TOOLCHAIN_LAUNCHER),
        alias="CHECKS_TOOLCHAIN_LAUNCHER",
    )
    inherit_environment: bool = Field(default=True, alias="CHECKS_INHERIT_ENVIRONMENT")
    http_timeout: float = Field(default=DEFAULT_HTTP_TIMEOUT, gt=0, alias="CHECKS_HTTP_TIMEOUT")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "populate_by_name": True,
    }

    @field_validator("config_source", mode="before")
    @classmethod
    def _validate_non_empty(cls, value: str) -> str:
        if not value or not str(value).strip():
            raise ValueError("CHECKS_CONFIG must not be empty")
        return str(value).strip()

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        level = str(value or "INFO").strip().upper()
        if level not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(f"Unsupported log level: {value}")
        return level

    def parallel_limit(self) -> int | None:
        return self.max_parallel or None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
