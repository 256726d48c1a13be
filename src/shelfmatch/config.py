"""Project configuration models and YAML loading."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator


class MatchingSettings(BaseModel):
    prefilter_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    brand_weight: float = Field(default=0.35, ge=0.0)
    size_weight: float = Field(default=0.35, ge=0.0)
    retailer_weight: float = Field(default=0.30, ge=0.0)
    neutral_subscore: float = Field(default=0.5, ge=0.0, le=1.0)
    visual_pass_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    save_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    single_candidate_confidence: float = Field(default=0.95, ge=0.0, le=1.0)
    search_result_cap: int = Field(default=100, ge=1)

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "MatchingSettings":
        total = self.brand_weight + self.size_weight + self.retailer_weight
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"pre-filter weights must sum to 1.0, got {total:.3f}")
        return self


class CatalogSettings(BaseModel):
    base_url: str = "https://api.foodgraph.com"
    email_env: str = "FOODGRAPH_EMAIL"
    password_env: str = "FOODGRAPH_PASSWORD"
    timeout_seconds: float = 30.0
    updated_at_from: str = "2025-07-01T00:00:00Z"
    token_ttl_seconds: int = 23 * 60 * 60


class ComparisonSettings(BaseModel):
    model: str = "gemini-2.5-flash"
    api_key_env: str = "GEMINI_API_KEY"
    timeout_seconds: float = 60.0
    image_timeout_seconds: float = 15.0


class BatchSettings(BaseModel):
    default_concurrency: int = Field(default=3, ge=1)
    max_concurrency: int = Field(default=10, ge=1)


class StorageSettings(BaseModel):
    db_path: str = "data/shelfmatch.db"


class ServerSettings(BaseModel):
    sse_retry_ms: int = 1500


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class AppSettings(BaseModel):
    matching: MatchingSettings = Field(default_factory=MatchingSettings)
    catalog: CatalogSettings = Field(default_factory=CatalogSettings)
    comparison: ComparisonSettings = Field(default_factory=ComparisonSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


DEFAULT_CONFIG_PATH = Path("configs/default.yaml")


def load_settings(config_path: str | Path | None = None) -> AppSettings:
    """Load YAML configuration into typed app settings."""
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    if not path.exists():
        return AppSettings()

    with path.open("r", encoding="utf-8") as f:
        raw: dict[str, Any] = yaml.safe_load(f) or {}

    return AppSettings.model_validate(raw)


def configure_logging(settings: LoggingSettings) -> None:
    """Configure root logging once for CLI and server entrypoints."""
    logging.basicConfig(level=settings.level.upper(), format=settings.format)
