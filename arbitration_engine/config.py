"""
Configuration for Arbitration Engine
====================================

Environment variables:
- DATABASE_URL: SQLAlchemy URL (default: sqlite:///./arbitration.db)
- REDIS_URL: Redis for the RQ job queue (default: redis://localhost:6379/0)
- SETTLEMENT_URL: Base URL of the settlement (ledger/contract) service
- NOTIFICATION_URL: Webhook for arbitrator notifications
- BINDING_DISPUTE_TYPES: JSON list of dispute types where a single decision is binding
- SWEEP_INTERVAL_SECONDS: Scheduler cadence (default: 900)
"""

from typing import Optional, List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings from environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    database_url: str = "sqlite:///./arbitration.db"
    redis_url: str = "redis://localhost:6379/0"

    # Case policy
    high_value_threshold: float = 10000.0
    max_appeals: int = 2
    appeal_window_days: int = 7
    binding_dispute_types: List[str] = Field(default_factory=list)
    expiry_default_ruling: str = "favor_respondent"

    # Reputation (bounded 0-5)
    reputation_min: float = 0.0
    reputation_max: float = 5.0
    reputation_step: float = 0.1
    default_reputation: float = 2.5

    # Settlement collaborator
    settlement_url: Optional[str] = None
    settlement_timeout: float = 10.0
    settlement_max_retries: int = 5
    settlement_retry_intervals: List[int] = Field(default_factory=lambda: [30, 120, 600])

    # Notification collaborator
    notification_url: Optional[str] = None
    notification_timeout: float = 3.0

    # Scheduler
    sweep_interval_seconds: int = 900
    sweep_claim_ttl_seconds: int = 300
    sweep_batch_size: int = 100

    # Service info
    service_version: str = "1.0.0"

    def validate_collaborators(self) -> List[str]:
        """Validate collaborator configuration, return list of warnings"""
        warnings = []

        if not self.settlement_url:
            warnings.append("SETTLEMENT_URL not set - resolutions will not be settled on-ledger")

        if not self.notification_url:
            warnings.append("NOTIFICATION_URL not set - arbitrator notifications are only logged")

        if self.reputation_min >= self.reputation_max:
            warnings.append("REPUTATION_MIN must be lower than REPUTATION_MAX")

        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
