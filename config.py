from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Literal
from functools import lru_cache


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Account Ledger API"
    app_version: str = "1.0.0"
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging settings
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"

    # Security settings
    rate_limit_enabled: bool = True
    rate_limit_per_minute: int = 30
    bcrypt_rounds: int = 12

    # CORS settings
    allowed_origins: List[str] = ["*"]  # In production, specify exact origins

    # Storage settings
    storage_backend: Literal["file", "memory"] = "file"
    ledger_path: str = "ledger.json"

    # Business logic settings
    initial_balance: float = 100.0
    credential_min_length: int = 8
    credential_max_bytes: int = 72  # bcrypt ignores input past 72 bytes

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Test preset
class TestingSettings(Settings):
    debug: bool = True
    log_level: str = "WARNING"  # Reduce noise in tests
    rate_limit_enabled: bool = False
    bcrypt_rounds: int = 4  # Lowest cost bcrypt accepts
    storage_backend: Literal["file", "memory"] = "memory"
