from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process configuration, read from STOCKGAME_* environment variables or .env."""

    environment: Literal["development", "production"] = "development"

    database_url: str = "sqlite:///./stockgame.db"

    jwt_secret: str = "dev-secret-change-me"
    jwt_algorithm: str = "HS256"
    jwt_ttl_hours: int = Field(default=24, ge=1)

    password_pbkdf2_iterations: int = Field(default=390000, ge=1)
    password_salt_bytes: int = Field(default=16, ge=8)

    admin_email: str = "adminUser@email.com"
    admin_password: str = "adminPassword"

    allowed_origins: str = "http://localhost:3000,http://localhost:3001"
    log_level: str = "INFO"

    settlement_max_attempts: int = Field(default=5, ge=1)
    seed_stocks: bool = True

    model_config = SettingsConfigDict(
        env_prefix="STOCKGAME_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def expose_error_detail(self) -> bool:
        return self.environment != "production"

    @property
    def origins(self) -> list[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
