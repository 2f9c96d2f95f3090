"""
Settings master configuration and loaders.
"""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import jsonschema
from dotenv import find_dotenv, load_dotenv

from ..config_schema import CONFIG_SCHEMA
from ..errors import ConfigurationError
from ..resilience import CircuitBreakerConfig
from ..retry import RetryPolicy
from .collaboration import CritiqueConfig, DiscussionConfig
from .logging import LoggingConfig, MetricsConfig, StorageConfig
from .runtime import ContextConfig, QueueConfig, WorkflowConfig


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _optional_float(value: str) -> float | None:
    return None if value.strip().lower() in ("", "none", "null") else float(value)


# (section, field, environment suffix, parser)
_ENV_FIELDS: tuple[tuple[str, str, str, Callable[[str], Any]], ...] = (
    ("queue", "max_concurrent", "QUEUE_MAX_CONCURRENT", int),
    ("queue", "max_queue_size", "QUEUE_MAX_SIZE", int),
    ("queue", "enable_queue", "QUEUE_ENABLED", _bool),
    ("queue", "default_timeout", "QUEUE_DEFAULT_TIMEOUT", _optional_float),
    ("queue", "retention", "QUEUE_RETENTION", float),
    ("workflow", "max_parallel_steps", "WORKFLOW_MAX_PARALLEL_STEPS", int),
    ("workflow", "max_steps", "WORKFLOW_MAX_STEPS", int),
    ("workflow", "max_active_workflows", "WORKFLOW_MAX_ACTIVE", int),
    ("workflow", "failure_policy", "WORKFLOW_FAILURE_POLICY", str.lower),
    ("workflow", "default_step_timeout", "WORKFLOW_STEP_TIMEOUT", _optional_float),
    ("workflow", "workflow_timeout", "WORKFLOW_TIMEOUT", _optional_float),
    ("context", "default_ttl", "CONTEXT_TTL", float),
    ("context", "max_snapshots", "CONTEXT_MAX_SNAPSHOTS", int),
    ("circuit_breaker", "failure_threshold", "BREAKER_FAILURE_THRESHOLD", int),
    ("circuit_breaker", "reset_timeout", "BREAKER_RESET_TIMEOUT", float),
    ("circuit_breaker", "success_threshold", "BREAKER_SUCCESS_THRESHOLD", int),
    ("circuit_breaker", "call_timeout", "BREAKER_CALL_TIMEOUT", _optional_float),
    ("retry", "max_attempts", "RETRY_MAX_ATTEMPTS", int),
    ("retry", "base_delay", "RETRY_BASE_DELAY", float),
    ("retry", "multiplier", "RETRY_MULTIPLIER", float),
    ("retry", "max_delay", "RETRY_MAX_DELAY", float),
    ("retry", "jitter", "RETRY_JITTER", float),
    ("critique", "max_iterations", "CRITIQUE_MAX_ITERATIONS", int),
    ("critique", "quality_threshold", "CRITIQUE_THRESHOLD", float),
    ("discussion", "max_rounds", "DISCUSSION_MAX_ROUNDS", int),
    ("discussion", "strategy", "DISCUSSION_STRATEGY", str.lower),
    ("discussion", "convergence_threshold", "DISCUSSION_CONVERGENCE_THRESHOLD", float),
    ("storage", "backend", "STORAGE_BACKEND", str.lower),
    ("storage", "redis_url", "REDIS_URL", str),
    ("storage", "key_prefix", "STORAGE_KEY_PREFIX", str),
    ("logging", "level", "LOG_LEVEL", str.upper),
    ("logging", "format", "LOG_FORMAT", str.lower),
    ("metrics", "enabled", "METRICS_ENABLED", _bool),
    ("metrics", "otel_enabled", "OTEL_ENABLED", _bool),
)


@dataclass
class Settings:
    """
    Master configuration for the orchestration runtime.

    Aggregates every component section into one object that can be loaded
    from environment variables, YAML/TOML files or a mapping, or constructed
    programmatically and handed to ``OrchestrationRuntime``.
    """

    queue: QueueConfig = field(default_factory=QueueConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    critique: CritiqueConfig = field(default_factory=CritiqueConfig)
    discussion: DiscussionConfig = field(default_factory=DiscussionConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    @classmethod
    def from_env(cls, prefix: str = "ORCH_") -> Settings:
        """
        Load settings from environment variables.

        Example:
            ORCH_QUEUE_MAX_CONCURRENT=20
            ORCH_WORKFLOW_FAILURE_POLICY=lenient
            ORCH_BREAKER_RESET_TIMEOUT=30
        """
        data: dict[str, dict[str, Any]] = {}
        for section, name, suffix, parse in _ENV_FIELDS:
            if (raw := os.getenv(f"{prefix}{suffix}")) is None:
                continue
            try:
                data.setdefault(section, {})[name] = parse(raw)
            except ValueError as exc:
                raise ConfigurationError(f"Invalid value for {prefix}{suffix}: {raw!r}", cause=exc) from exc
        return cls.from_dict(data)

    @classmethod
    def from_file(cls, path: str | Path) -> Settings:
        """
        Load settings from a YAML or TOML file.

        Args:
            path: Path to configuration file (.yaml, .yml, or .toml)
        """
        path = Path(path)

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        suffix = path.suffix.lower()

        if suffix in (".yaml", ".yml"):
            import yaml

            with open(path) as f:
                data = yaml.safe_load(f) or {}
        elif suffix == ".toml":
            try:
                import tomllib
            except ImportError:
                import tomli as tomllib
            with open(path, "rb") as f:
                data = tomllib.load(f)
        else:
            raise ConfigurationError(f"Unsupported config file format: {suffix}")

        return cls.from_dict(data)

    @classmethod
    def default(cls) -> Settings:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Settings:
        """
        Create Settings from a mapping.

        The mapping is validated against the configuration schema first;
        unknown sections or keys are rejected.
        """
        try:
            jsonschema.validate(instance=data, schema=CONFIG_SCHEMA)
        except jsonschema.ValidationError as exc:
            location = ".".join(str(p) for p in exc.absolute_path) or "<root>"
            raise ConfigurationError(
                f"Configuration validation failed at {location}: {exc.message}", cause=exc
            ) from exc

        settings = cls()
        for section, values in data.items():
            current = getattr(settings, section)
            try:
                setattr(settings, section, dataclasses.replace(current, **values))
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"Invalid '{section}' configuration: {exc}", cause=exc) from exc
        return settings

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to a plain mapping (round-trips through from_dict)."""

        def convert(obj: Any) -> Any:
            if isinstance(obj, Enum):
                return obj.value
            if isinstance(obj, dict):
                return {k: convert(v) for k, v in obj.items()}
            return obj

        return {f.name: convert(dataclasses.asdict(getattr(self, f.name))) for f in dataclasses.fields(self)}


def load_env(path: str | None = None, *, override: bool = False) -> bool:
    """
    Load environment variables from a .env file.

    Args:
        path: Optional path to a .env file. If not provided, uses find_dotenv().
        override: Whether to override existing environment variables.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    env_path = path or find_dotenv(usecwd=True)
    if not env_path:
        return False
    return load_dotenv(env_path, override=override)


__all__ = ["Settings", "load_env"]
