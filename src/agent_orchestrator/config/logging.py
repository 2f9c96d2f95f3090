"""
Logging, metrics and storage configuration.
"""

from __future__ import annotations

from dataclasses import dataclass

from .base import LogFormat, LogLevel, StorageBackend


@dataclass(frozen=True)
class LoggingConfig:
    """Configuration for logging."""

    level: LogLevel = "INFO"
    format: LogFormat = "text"
    logger_name: str = "agent_orchestrator"

    def __post_init__(self) -> None:
        valid_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        if self.level not in valid_levels:
            raise ValueError(f"Invalid log level: {self.level}. Must be one of {valid_levels}")
        valid_formats = ("text", "json")
        if self.format not in valid_formats:
            raise ValueError(f"Invalid log format: {self.format}. Must be one of {valid_formats}")


@dataclass(frozen=True)
class MetricsConfig:
    """Configuration for in-process metrics and optional tracing."""

    enabled: bool = True
    reservoir_size: int = 1000
    otel_enabled: bool = False
    otel_service_name: str = "agent-orchestrator"

    def __post_init__(self) -> None:
        if self.reservoir_size < 1:
            raise ValueError("reservoir_size must be at least 1")


@dataclass(frozen=True)
class StorageConfig:
    """Configuration for the durable keyed store."""

    backend: StorageBackend = "memory"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "orchestrator"

    def __post_init__(self) -> None:
        if self.backend not in ("memory", "redis"):
            raise ValueError(f"Invalid storage backend: {self.backend}. Must be 'memory' or 'redis'")


__all__ = ["LoggingConfig", "MetricsConfig", "StorageConfig"]
