"""Core components for memflow."""

from memflow.core.config import MemorySystemConfig, Settings, get_settings, reset_settings
from memflow.core.logging import configure_logging

__all__ = ["MemorySystemConfig", "Settings", "get_settings", "reset_settings", "configure_logging"]
