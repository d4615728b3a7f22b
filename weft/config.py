"""Global configuration — loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class WeftSettings(BaseSettings):
    log_level: str = "INFO"

    # Adaptation
    velocity_threshold: float = 0.30  # relative deviation before VelocityAnomaly
    max_repair_iterations: int = 3
    patience_window_seconds: int = 3600  # how long a dependency may stay blocked
    strategy_priority: list[str] = ["replacement", "restructuring", "refinement"]
    replacement_candidates: int = 2
    adaptation_min_severity: int = 2  # triggers below this are logged, not acted on

    # Context
    context_retention_budget: int = 20_000  # total characters across all layers
    context_compaction_ratio: float = 0.50  # compact once this share of the budget is used
    compression_min_cluster: int = 3
    recency_half_life_seconds: int = 3600

    # Observability
    event_history_limit: int = 500
    audit_db_path: Path | None = None

    model_config = {"env_prefix": "WEFT_"}


settings = WeftSettings()
