from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./tessera.db"

    # Backend
    BACKEND_HOST: str = "0.0.0.0"
    BACKEND_PORT: int = 8000
    APP_DEBUG: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False  # True for production (structured JSON), False for dev (colored)
    LOG_SQL: bool = False

    # Content generation
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"
    CONTENT_MAX_TOKENS: int = 400
    CONTENT_TIMEOUT_SECONDS: float = 8.0
    CONTENT_FAILURE_THRESHOLD: int = 3

    # Engine tuning
    CANDIDATE_POOL_CAP: int = 25
    CANDIDATE_COST_BUDGET: float = 12.0
    CALIBRATION_LEARNING_RATE: float = 0.1
    MIN_TEMPLATE_FILL_QUALITY: float = 0.5
    MAX_COGNITIVE_LOAD: float = 2.5
    EXPANSION_PREFERENCE: float = 0.7
    STAGE_THRESHOLD_PRESET: str = "default"
    EVALUATION_STRICTNESS: Literal["lenient", "normal", "strict"] = "normal"
    ALLOW_LEGACY_FALLBACK: bool = True

    @property
    def content_generation_enabled(self) -> bool:
        return bool(self.OPENAI_API_KEY)

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Engine tuning knobs, passed explicitly to the pipeline."""
    pool_cap: int = 25
    cost_budget: float = 12.0
    learning_rate: float = 0.1
    min_fill_quality: float = 0.5
    max_cognitive_load: float = 2.5
    expansion_preference: float = 0.7
    stage_preset: str = "default"
    strictness: str = "normal"
    allow_legacy_fallback: bool = True

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "EngineConfig":
        s = settings or get_settings()
        return cls(
            pool_cap=s.CANDIDATE_POOL_CAP,
            cost_budget=s.CANDIDATE_COST_BUDGET,
            learning_rate=s.CALIBRATION_LEARNING_RATE,
            min_fill_quality=s.MIN_TEMPLATE_FILL_QUALITY,
            max_cognitive_load=s.MAX_COGNITIVE_LOAD,
            expansion_preference=s.EXPANSION_PREFERENCE,
            stage_preset=s.STAGE_THRESHOLD_PRESET,
            strictness=s.EVALUATION_STRICTNESS,
            allow_legacy_fallback=s.ALLOW_LEGACY_FALLBACK,
        )
