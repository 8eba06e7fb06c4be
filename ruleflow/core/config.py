"""Engine configuration loaded from the environment."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class EngineSettings(BaseSettings):
    """Engine settings loaded from environment (``RULEFLOW_`` prefix)."""

    # Inference limits
    default_cycle_limit: int = 1000
    default_time_budget_s: float | None = None

    # Parallel session execution
    max_workers: int = 4

    # Logging
    log_level: str = "info"
    log_json: bool = False

    model_config = {
        "env_prefix": "RULEFLOW_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> EngineSettings:
    """Get cached settings instance."""
    return EngineSettings()
