"""Frontdesk – Application Configuration.

Pydantic Settings for the scenario matching engine.
Loads from .env file or environment variables.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Gateway ---
    environment: str = "development"
    log_level: str = "info"
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 8000

    # --- Scenario Store ---
    scenario_store_backend: str = "sql"  # 'sql' | 'yaml'
    scenario_corpus_path: str = "config/scenarios.yaml"
    database_url: str = ""
    store_timeout_seconds: float = 2.0

    # --- Redis ---
    redis_url: str = "redis://127.0.0.1:6379/0"
    decision_cache_backend: str = "memory"  # 'memory' | 'redis'

    # --- Caches ---
    pool_cache_ttl_seconds: int = 300  # 5 minutes
    decision_cache_ttl_seconds: int = 60
    decision_cache_max_entries: int = 10_000

    # --- Cascade thresholds ---
    tier1_threshold: float = 0.80
    tier2_threshold: float = 0.60
    tier3_max_candidates: int = 25
    tier3_timeout_seconds: float = 4.0
    route_timeout_seconds: float = 5.0
    review_confidence_threshold: float = 0.70

    # --- LLM provider (Tier 3) ---
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o-mini"
    llm_api_key: str = ""

    # --- Fallback / replies ---
    safe_scenario_id: str = ""
    no_match_reply: str = (
        "I'm sorry, I didn't quite catch that. "
        "Could you tell me a little more about what you need?"
    )
    faq_quick_prefix: bool = False

    # --- Learning ---
    learning_queue_size: int = 1000

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_testing(self) -> bool:
        return self.environment == "testing"


def get_settings() -> Settings:
    """Factory function for settings singleton."""
    return Settings()
