"""Application configuration."""

from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    environment: str = "development"  # development, production

    # Database (one local SQLite file per installation)
    database_url: str = "sqlite+aiosqlite:///./certvault.db"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Certificate lifecycle
    expiring_window_days: int = 30
    history_default_limit: int = 50

    # Vault password policy and Argon2id cost
    min_password_length: int = 16
    argon2_memory_kib: int = 65536  # 64 MiB
    argon2_iterations: int = 3
    argon2_parallelism: int = 4

    # Local backups (disabled when unset)
    backup_dir: str | None = None
    auto_backup_before_restore: bool = True

    # Server (local only by default)
    host: str = "127.0.0.1"
    port: int = 8000

    # URLs
    frontend_url: str = "http://localhost:3000"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        """Reject settings the engine cannot run with."""
        if self.argon2_parallelism < 1:
            raise ValueError("ARGON2_PARALLELISM must be at least 1")
        if self.argon2_memory_kib < 8 * self.argon2_parallelism:
            raise ValueError("ARGON2_MEMORY_KIB must be at least 8 * ARGON2_PARALLELISM")
        if self.argon2_iterations < 1:
            raise ValueError("ARGON2_ITERATIONS must be at least 1")
        if self.expiring_window_days < 1:
            raise ValueError("EXPIRING_WINDOW_DAYS must be positive")
        if self.min_password_length < 1:
            raise ValueError("MIN_PASSWORD_LENGTH must be positive")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
