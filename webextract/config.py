"""
Configuration for the web extraction engine.

Defaults come from environment variables, including a ``.env`` file in the
working directory that ``get_settings`` loads. Explicit keyword arguments win.
Raw environment strings are coerced to each field's type by pydantic.
"""

import os
from pathlib import Path
from typing import Any, List, Optional, Union

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _env(name: str, default: Any = None) -> Any:
    # Unset and empty variables both fall back to the default.
    return os.getenv(name) or default


class Settings(BaseModel):
    """Engine settings."""

    model_config = ConfigDict(validate_default=True)

    # Logging
    log_level: str = Field(default_factory=lambda: _env("WEBEXTRACT_LOG_LEVEL", "INFO"))
    dev_mode: bool = Field(default_factory=lambda: _env("WEBEXTRACT_DEV_MODE", False))
    log_file: Optional[str] = Field(default_factory=lambda: _env("WEBEXTRACT_LOG_FILE"))

    # Reasoning provider
    openai_api_key: Optional[str] = Field(default_factory=lambda: _env("OPENAI_API_KEY"))
    completion_model: str = Field(
        default_factory=lambda: _env("WEBEXTRACT_COMPLETION_MODEL", "gpt-4o-mini")
    )
    embedding_model: str = Field(
        default_factory=lambda: _env("WEBEXTRACT_EMBEDDING_MODEL", "text-embedding-3-small")
    )
    reasoning_timeout: float = Field(
        default_factory=lambda: _env("WEBEXTRACT_REASONING_TIMEOUT", 120.0)
    )

    # Storage
    store_type: str = Field(default_factory=lambda: _env("WEBEXTRACT_STORE", "memory"))
    database_url: Optional[str] = Field(default_factory=lambda: _env("DATABASE_URL"))

    # Fetching
    user_agent: str = Field(default_factory=lambda: _env("WEBEXTRACT_USER_AGENT", "ExtractionBot/1.0"))
    fetch_timeout: float = Field(default_factory=lambda: _env("WEBEXTRACT_FETCH_TIMEOUT", 30.0))
    respect_robots: bool = Field(default_factory=lambda: _env("WEBEXTRACT_RESPECT_ROBOTS", True))
    requests_per_second: float = Field(default_factory=lambda: _env("WEBEXTRACT_RPS", 2.0))
    burst: int = Field(default_factory=lambda: _env("WEBEXTRACT_BURST", 5))
    allow_hosts: List[str] = Field(default_factory=lambda: _env("WEBEXTRACT_ALLOW_HOSTS", []))

    # Ingestion
    ingest_concurrency: int = Field(default_factory=lambda: _env("WEBEXTRACT_CONCURRENCY", 5))
    summary_batch_chars: int = 24_000
    summary_max_page_chars: int = 8_000

    # Recall / extraction
    semantic_weight: float = Field(default_factory=lambda: _env("WEBEXTRACT_SEMANTIC_WEIGHT", 0.6))
    specific_term_boost: float = 1.5
    max_summaries_for_partition: int = 50
    max_pages_per_partition: int = 10
    strict_mode: bool = Field(default_factory=lambda: _env("WEBEXTRACT_STRICT_MODE", True))
    verified_threshold: int = 2

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure the level is a known logging level."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("allow_hosts", mode="before")
    @classmethod
    def parse_allow_hosts(cls, v: Union[str, List[str]]) -> List[str]:
        """Accept a comma-separated string or a list."""
        if isinstance(v, str):
            return [h.strip().lower() for h in v.split(",") if h.strip()]
        return [h.lower() for h in v]

    @field_validator("semantic_weight")
    @classmethod
    def validate_semantic_weight(cls, v: float) -> float:
        """Weight must be a fraction."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("semantic_weight must be between 0 and 1")
        return v

    @field_validator("requests_per_second", "burst", "ingest_concurrency", "verified_threshold")
    @classmethod
    def validate_positive(cls, v):
        """Rates and counts must be positive."""
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @model_validator(mode="after")
    def validate_store(self) -> "Settings":
        """Postgres needs a connection string."""
        if self.store_type not in ("memory", "postgres"):
            raise ValueError(f"Unknown store_type: {self.store_type}")
        if self.store_type == "postgres" and not self.database_url:
            raise ValueError("database_url required when store_type is postgres")
        return self

    def get_log_file_path(self) -> Optional[Path]:
        return Path(self.log_file) if self.log_file else None


# Singleton instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        load_dotenv(find_dotenv(usecwd=True))
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
