from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CREDITS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = "INFO"

    # Ledger store; in-memory when no URI is set
    mongo_uri: Optional[str] = None
    mongo_db: str = "generation_credits"
    ledger_log_path: str = "logs/credit_ledger.log"
    balance_cache_ttl_seconds: int = 60
    plan_cache_ttl_seconds: int = 300

    # Ledger retry policy
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=0.1, ge=0)

    # Pricing
    premium_multiplier: int = Field(default=2, ge=1)
    pro_plan_credits: int = 2000
    custom_plan_credits: int = 3300
    stale_reservation_minutes: int = 30

    # Orchestrator
    multipart_threshold_words: int = 800
    paid_multipart_threshold_words: int = 500
    max_chunk_words: int = 500
    max_chunk_attempts: int = 8
    underrun_threshold: int = 3
    underrun_ratio: float = Field(default=0.5, gt=0, le=1)
    context_tail_words: int = 150
    generation_timeout_seconds: float = 300.0
    final_detection_enabled: bool = True

    # Refinement and acceptance
    refinement_enabled: bool = True
    refinement_max_cycles: int = Field(default=2, ge=0)
    refinement_threshold: float = 75.0
    min_originality: float = 80.0
    max_ai_detection: float = 30.0
    max_plagiarism: float = 15.0
    review_threshold: float = 70.0

    # Backends
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    detection_api_url: Optional[str] = None
    detection_api_key: str = ""
    detection_timeout_seconds: float = 30.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
