"""
Settings for the lending core, read from ``LENDING_*`` environment variables
or a local ``.env`` file.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LendingConfig(BaseSettings):
    """Runtime settings; money values are strings so they parse straight into Decimal"""

    model_config = SettingsConfigDict(
        env_prefix="LENDING_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    storage_backend: str = "sqlite"  # sqlite | memory
    database_path: str = "lending_core.db"

    # HTTP server
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_workers: int = 1

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json | text
    log_file: Optional[str] = None

    # Lending rules
    grace_period_days: int = 3
    flat_late_fee: str = "25"
    days_per_month: int = 30
    days_per_year: int = 365
    min_accrued_interest: str = "0.01"

    # Actor names written on automatic rollbacks
    system_actor: str = "SYSTEM"
    auto_rollback_actor: str = "SYSTEM_AUTO"

    # Named failure point to trip, e.g. "disbursement.post_commit"; empty disables
    fault_injection: str = ""

    enable_audit_logging: bool = True


config = LendingConfig()


def get_config() -> LendingConfig:
    return config


def reload_config() -> LendingConfig:
    """Re-read the environment and replace the module-level settings"""
    global config
    config = LendingConfig()
    return config
