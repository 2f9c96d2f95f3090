"""
Configuration system for agent-orchestrator.

This package provides typed configuration classes with:
- Frozen dataclass sections validated in ``__post_init__``
- Environment variable loading (``ORCH_`` prefix, optional .env file)
- YAML/TOML file loading validated against a JSON schema
"""

from ..resilience import CircuitBreakerConfig
from ..retry import RetryPolicy
from .base import ConsensusStrategy, FailurePolicy, LogFormat, LogLevel, StorageBackend
from .collaboration import MAX_CRITIQUE_ITERATIONS, CritiqueConfig, DiscussionConfig
from .logging import LoggingConfig, MetricsConfig, StorageConfig
from .runtime import ContextConfig, QueueConfig, WorkflowConfig
from .settings import Settings, load_env

__all__ = [
    # Types
    "LogLevel",
    "LogFormat",
    "StorageBackend",
    "FailurePolicy",
    "ConsensusStrategy",
    # Sections
    "QueueConfig",
    "WorkflowConfig",
    "ContextConfig",
    "CircuitBreakerConfig",
    "RetryPolicy",
    "CritiqueConfig",
    "DiscussionConfig",
    "MAX_CRITIQUE_ITERATIONS",
    "StorageConfig",
    "LoggingConfig",
    "MetricsConfig",
    # Master
    "Settings",
    "load_env",
]
