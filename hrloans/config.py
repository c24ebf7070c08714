"""
HR Loan Ledger - Configuration Settings

This module handles all application configuration using Pydantic Settings.
Environment variables are loaded from .env file.
"""

from functools import lru_cache
from typing import List, Literal
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ===========================================
    # APPLICATION CONFIGURATION
    # ===========================================
    app_name: str = "HR Loan Ledger"
    app_env: str = "development"
    debug: bool = False
    api_prefix: str = "/api/v1/hr"

    # ===========================================
    # DATABASE CONFIGURATION
    # ===========================================
    database_url_async: str = "sqlite+aiosqlite:///./hrloans.db"
    database_echo: bool = False

    # ===========================================
    # DOCUMENT STORE
    # ===========================================
    ledger_root: str = "hr"
    store_max_retries: int = 5  # optimistic transaction attempts before giving up

    # ===========================================
    # LOAN POLICY
    # ===========================================
    loan_ceiling_multiplier: int = 3  # standard max = multiplier x gross monthly
    max_emi_months: int = 60
    override_rejection_policy: Literal["reject_loan", "cap_at_standard_max"] = "reject_loan"

    # ===========================================
    # CORS SETTINGS
    # ===========================================
    cors_origins: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:5173"

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins string into list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def loans_path(self) -> str:
        """Collection path holding loan documents."""
        return f"{self.ledger_root}/loans"

    @property
    def employees_path(self) -> str:
        """Collection path holding employee documents."""
        return f"{self.ledger_root}/employees"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env.lower() == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    """
    return Settings()


# Export settings instance
settings = get_settings()
