"""
Configuration models for deployment-sync.

Controller runtime settings with environment variable support.
"""

from pathlib import Path
from typing import Any, Dict, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .intent import INTENT_GROUP, INTENT_PLURAL, INTENT_VERSION


class ControllerSettings(BaseSettings):
    """Controller settings, overridable through DSYNC_* environment variables"""
    model_config = SettingsConfigDict(
        env_prefix="DSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Work dispatch
    worker_count: int = Field(default=2, ge=1, le=64)
    resync_period_seconds: float = Field(default=300.0, gt=0)
    reconcile_timeout_seconds: float = Field(default=30.0, gt=0)
    max_conflict_retries: int = Field(default=5, ge=0, le=100)

    # Per-key exponential backoff for failed reconciles
    backoff_base_seconds: float = Field(default=0.005, gt=0)
    backoff_max_seconds: float = Field(default=300.0, gt=0)

    # Cluster access
    in_cluster: bool = False
    kubeconfig: Optional[Path] = None
    context: Optional[str] = None
    watch_namespace: Optional[str] = None  # None watches all namespaces

    # Intent resource coordinates
    intent_group: str = INTENT_GROUP
    intent_version: str = INTENT_VERSION
    intent_plural: str = INTENT_PLURAL

    # Logging
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator('watch_namespace', 'context', mode='before')
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @model_validator(mode='after')
    def validate_backoff(self) -> 'ControllerSettings':
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError('backoff_max_seconds must be >= backoff_base_seconds')
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        data = self.model_dump()
        if data['kubeconfig'] is not None:
            data['kubeconfig'] = str(data['kubeconfig'])
        return data
