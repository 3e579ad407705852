from functools import lru_cache
from typing import List, Optional, Union

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Assessment Experiments"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # API
    API_V1_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database (empty URL keeps experiments in memory only)
    DATABASE_URL: str = ""
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Experimentation engine
    EXPERIMENT_MIN_SAMPLE_SIZE: int = 100
    EXPERIMENT_SIGNIFICANCE_THRESHOLD: float = 0.05
    EXPERIMENT_CONFIDENCE_LEVEL: float = 0.95
    EXPERIMENT_DEFAULT_DURATION_DAYS: int = 14
    EVENT_QUEUE_MAX_SIZE: int = 10000
    RANDOM_SEED: Optional[int] = None

    # CORS
    CORS_ORIGINS: Union[List[str], str] = []

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            # Handle both comma-separated and JSON array strings
            if v.strip().startswith("["):
                import json

                return json.loads(v)
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("EXPERIMENT_SIGNIFICANCE_THRESHOLD", "EXPERIMENT_CONFIDENCE_LEVEL")
    @classmethod
    def check_probability(cls, v: float) -> float:
        if not 0 < v < 1:
            raise ValueError("must be between 0 and 1")
        return v

    @property
    def persistence_enabled(self) -> bool:
        return bool(self.DATABASE_URL)

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()
