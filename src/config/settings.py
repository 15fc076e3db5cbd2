"""Settings. .env overrides some of these values."""

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database (SQLite with FTS5)
    database_url: str = "sqlite:///data/articles.db"
    db_busy_timeout_seconds: float = 10.0

    # Judge LLM via OpenRouter (OpenAI-compatible API)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    llm_model: str = "google/gemini-2.5-flash"
    llm_temperature: float = 0.1
    judge_timeout_seconds: float = 60.0
    judge_max_attempts: int = 2
    judge_backoff_seconds: float = 2.0

    # Candidate index
    lookback_days: int = 30
    candidate_limit: int = 20
    cve_weight: float = 3.0
    entity_weight: float = 1.0

    # Similarity index (bm25 field weights)
    fallback_window_days: int = 30
    headline_weight: float = 10.0
    summary_weight: float = 5.0
    full_report_weight: float = 1.0

    # Resolution thresholds (magnitude of bm25, higher = closer)
    t_low: float = 80.0
    t_high: float = 200.0
    judge_top_k: int = 3

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Paths
    data_dir: str = "data"
    output_dir: str = "outputs"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()


class ResolutionConfig(BaseModel):
    """Engine tunables supplied by the orchestrator for one run."""

    lookback_days: int = Field(30, ge=1)
    fallback_window_days: int = Field(30, ge=1)
    t_low: float = Field(80.0, ge=0.0)
    t_high: float = Field(200.0, ge=0.0)
    headline_weight: float = Field(10.0, ge=0.0)
    summary_weight: float = Field(5.0, ge=0.0)
    full_report_weight: float = Field(1.0, ge=0.0)
    cve_weight: float = Field(3.0, ge=0.0)
    entity_weight: float = Field(1.0, ge=0.0)
    top_k: int = Field(3, ge=1)
    candidate_limit: int = Field(20, ge=1)
    excluded_entity_types: frozenset[str] = frozenset(
        {"person", "technology", "security_organization", "other"}
    )

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_band(self) -> "ResolutionConfig":
        if self.t_low > self.t_high:
            raise ValueError(f"t_low ({self.t_low}) must not exceed t_high ({self.t_high})")
        return self

    @property
    def field_weights(self) -> tuple[float, float, float]:
        return (self.headline_weight, self.summary_weight, self.full_report_weight)

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "ResolutionConfig":
        s = source or settings
        return cls(
            lookback_days=s.lookback_days,
            fallback_window_days=s.fallback_window_days,
            t_low=s.t_low,
            t_high=s.t_high,
            headline_weight=s.headline_weight,
            summary_weight=s.summary_weight,
            full_report_weight=s.full_report_weight,
            cve_weight=s.cve_weight,
            entity_weight=s.entity_weight,
            top_k=s.judge_top_k,
            candidate_limit=s.candidate_limit,
        )
