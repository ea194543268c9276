"""Configuration management for memflow."""

from enum import Enum
from typing import Optional
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageBackend(str, Enum):
    """Supported storage backends."""
    MEMORY = "memory"
    SQLITE = "sqlite"


class Settings(BaseSettings):
    """Global settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MEMFLOW_",
        extra="ignore",
    )

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # Storage
    storage_backend: StorageBackend = StorageBackend.MEMORY
    sqlite_path: str = "memflow.db"

    # Runtime tuning
    cache_size: int = Field(default=1000, ge=1)
    consolidation_interval: float = Field(default=300.0, gt=0)
    cleanup_interval: float = Field(default=60.0, gt=0)


class WorkingMemoryConfig(BaseModel):
    """Configuration for working memory."""

    max_size: int = Field(default=100, ge=1)

    # Expiry, in seconds
    ttl: float = Field(default=300.0, gt=0)
    ephemeral_ttl: float = Field(default=30.0, gt=0)
    cleanup_interval: float = Field(default=60.0, gt=0)

    # Signal needed for an expiring unit to move to long-term memory
    transition_access_threshold: int = Field(default=3, ge=0)
    transition_relevance_threshold: float = Field(default=0.7, ge=0.0, le=1.0)


class ConsolidationConfig(BaseModel):
    """Thresholds for working to long-term consolidation."""

    access_count_threshold: int = Field(default=5, ge=0)
    age_threshold_hours: float = Field(default=24.0, ge=0)
    priority_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    context_switch_threshold: int = Field(default=3, ge=0)
    capacity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)

    max_working_memory_size: int = Field(default=1000, ge=1)

    # Merge relevance must reach consolidation_threshold / 10
    consolidation_threshold: float = Field(default=5.0, ge=0.0)

    # Optimization candidate selection
    optimize_max_access_count: int = Field(default=5, ge=0)
    optimize_exclude_access_count: int = Field(default=10, ge=0)


class EpisodicMemoryConfig(BaseModel):
    """Retention and duplicate-merge settings for episodic memory."""

    min_importance: float = Field(default=0.3, ge=0.0, le=1.0)
    min_emotional_significance: float = Field(default=0.5, ge=0.0, le=1.0)
    min_access_count: int = Field(default=3, ge=0)
    max_age_days: float = Field(default=30.0, gt=0)
    duplicate_window_seconds: float = Field(default=3600.0, gt=0)


class MemorySystemConfig(BaseModel):
    """Main configuration for AgentMemorySystem."""

    name: str = "memflow"

    cache_size: int = Field(default=1000, ge=1)
    consolidation_interval: float = Field(default=300.0, gt=0)

    working: WorkingMemoryConfig = Field(default_factory=WorkingMemoryConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    episodic: EpisodicMemoryConfig = Field(default_factory=EpisodicMemoryConfig)

    # Session context
    context_history_size: int = Field(default=10, ge=1)
    context_ttl: Optional[float] = Field(default=None, gt=0)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "MemorySystemConfig":
        """Build a configuration seeded from environment settings."""
        settings = settings or get_settings()
        return cls(
            cache_size=settings.cache_size,
            consolidation_interval=settings.consolidation_interval,
            working=WorkingMemoryConfig(cleanup_interval=settings.cleanup_interval),
        )

    @classmethod
    def from_file(cls, path: str | Path) -> "MemorySystemConfig":
        """Load configuration from a file."""
        import json
        import yaml

        path = Path(path)
        content = path.read_text()

        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content)
        elif path.suffix == ".json":
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config file format: {path.suffix}")

        return cls.model_validate(data or {})

    def to_file(self, path: str | Path) -> None:
        """Save configuration to a file."""
        import json
        import yaml

        path = Path(path)
        data = self.model_dump(mode="json")

        if path.suffix in (".yaml", ".yml"):
            content = yaml.dump(data, default_flow_style=False)
        elif path.suffix == ".json":
            content = json.dumps(data, indent=2)
        else:
            raise ValueError(f"Unsupported config file format: {path.suffix}")

        path.write_text(content)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset the global settings instance."""
    global _settings
    _settings = None
