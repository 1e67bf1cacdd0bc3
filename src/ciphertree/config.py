"""
Runtime configuration using pydantic-settings.

Values load from CIPHERTREE_* environment variables, then an optional .env
file, then the defaults below. Defaults are safe for local use.
"""
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ─────────────────────────────────────────────────────────────
    # Argon2id defaults for new vaults (tune per device)
    # ─────────────────────────────────────────────────────────────
    KDF_T_COST: int = 4
    KDF_M_COST_KIB: int = 262144  # 256 MiB
    KDF_PARALLELISM: int = 2

    # ─────────────────────────────────────────────────────────────
    # Pointer records
    # Client-published records live 24h; the republishing
    # collaborator refreshes them with a 48h lifetime.
    # ─────────────────────────────────────────────────────────────
    RECORD_LIFETIME_HOURS: int = 24
    REPUBLISH_LIFETIME_HOURS: int = 48

    PUBLISH_MAX_ATTEMPTS: int = 3
    PUBLISH_CONCURRENCY: int = 10
    RESOLVE_TIMEOUT_SECONDS: float = 5.0

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="CIPHERTREE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("PUBLISH_MAX_ATTEMPTS", "PUBLISH_CONCURRENCY")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.strip().upper()

    @property
    def record_lifetime_ms(self) -> int:
        return self.RECORD_LIFETIME_HOURS * 60 * 60 * 1000

    @property
    def republish_lifetime_ms(self) -> int:
        return self.REPUBLISH_LIFETIME_HOURS * 60 * 60 * 1000


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance, loaded once per process."""
    return Settings()
