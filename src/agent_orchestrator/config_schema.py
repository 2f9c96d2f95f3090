"""
JSON schemas for configuration validation.
"""

_TIMEOUT = {"type": ["number", "null"], "exclusiveMinimum": 0}

QUEUE_SCHEMA = {
    "type": "object",
    "properties": {
        "max_concurrent": {"type": "integer", "minimum": 1},
        "max_queue_size": {"type": "integer", "minimum": 0},
        "enable_queue": {"type": "boolean"},
        "default_timeout": _TIMEOUT,
        "default_priority": {"type": "integer", "minimum": 0, "maximum": 100},
        "retention": {"type": "number", "exclusiveMinimum": 0},
        "key_prefix": {"type": "string"},
    },
    "additionalProperties": False,
}

WORKFLOW_SCHEMA = {
    "type": "object",
    "properties": {
        "max_parallel_steps": {"type": "integer", "minimum": 1},
        "max_steps": {"type": "integer", "minimum": 1},
        "max_active_workflows": {"type": "integer", "minimum": 1},
        "failure_policy": {"type": "string", "enum": ["strict", "lenient"]},
        "default_step_timeout": _TIMEOUT,
        "workflow_timeout": _TIMEOUT,
        "max_map_reduce_items": {"type": "integer", "minimum": 1},
        "retention": {"type": "number", "exclusiveMinimum": 0},
        "key_prefix": {"type": "string"},
    },
    "additionalProperties": False,
}

CONTEXT_SCHEMA = {
    "type": "object",
    "properties": {
        "default_ttl": {"type": "number", "exclusiveMinimum": 0},
        "max_snapshots": {"type": "integer", "minimum": 1},
        "max_nesting_depth": {"type": "integer", "minimum": 1},
        "key_prefix": {"type": "string"},
    },
    "additionalProperties": False,
}

CIRCUIT_BREAKER_SCHEMA = {
    "type": "object",
    "properties": {
        "failure_threshold": {"type": "integer", "minimum": 1},
        "reset_timeout": {"type": "number", "minimum": 0},
        "success_threshold": {"type": "integer", "minimum": 1},
        "call_timeout": _TIMEOUT,
        "half_open_max_calls": {"type": "integer", "minimum": 1},
    },
    "additionalProperties": False,
}

RETRY_SCHEMA = {
    "type": "object",
    "properties": {
        "max_attempts": {"type": "integer", "minimum": 1},
        "base_delay": {"type": "number", "minimum": 0},
        "multiplier": {"type": "number", "minimum": 1},
        "max_delay": {"type": "number", "minimum": 0},
        "jitter": {"type": "number", "minimum": 0, "maximum": 1},
    },
    "additionalProperties": False,
}

_STRATEGIES = ["unanimous", "majority", "weighted", "facilitator"]

CRITIQUE_SCHEMA = {
    "type": "object",
    "properties": {
        "max_iterations": {"type": "integer", "minimum": 1},
        "quality_threshold": {"type": "number", "minimum": 0, "maximum": 1},
        "require_criterion_thresholds": {"type": "boolean"},
        "call_timeout": _TIMEOUT,
        "session_timeout": _TIMEOUT,
        "priority": {"type": "integer", "minimum": 0, "maximum": 100},
    },
    "additionalProperties": False,
}

DISCUSSION_SCHEMA = {
    "type": "object",
    "properties": {
        "max_rounds": {"type": "integer", "minimum": 1},
        "max_participants": {"type": "integer", "minimum": 1},
        "convergence_threshold": {"type": "number", "minimum": 0, "maximum": 1},
        "strategy": {"type": "string", "enum": _STRATEGIES},
        "weighted_threshold": {"type": "number", "minimum": 0, "maximum": 1},
        "facilitator_fallback": {"type": ["string", "null"], "enum": [*_STRATEGIES[:3], None]},
        "max_parallel_participants": {"type": "integer", "minimum": 1},
        "call_timeout": _TIMEOUT,
        "session_timeout": _TIMEOUT,
        "priority": {"type": "integer", "minimum": 0, "maximum": 100},
    },
    "additionalProperties": False,
}

STORAGE_SCHEMA = {
    "type": "object",
    "properties": {
        "backend": {"type": "string", "enum": ["memory", "redis"]},
        "redis_url": {"type": "string"},
        "key_prefix": {"type": "string"},
    },
    "additionalProperties": False,
}

LOGGING_SCHEMA = {
    "type": "object",
    "properties": {
        "level": {"type": "string", "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
        "format": {"type": "string", "enum": ["text", "json"]},
        "logger_name": {"type": "string"},
    },
    "additionalProperties": False,
}

METRICS_SCHEMA = {
    "type": "object",
    "properties": {
        "enabled": {"type": "boolean"},
        "reservoir_size": {"type": "integer", "minimum": 1},
        "otel_enabled": {"type": "boolean"},
        "otel_service_name": {"type": "string"},
    },
    "additionalProperties": False,
}

CONFIG_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Agent Orchestrator Configuration",
    "type": "object",
    "properties": {
        "queue": QUEUE_SCHEMA,
        "workflow": WORKFLOW_SCHEMA,
        "context": CONTEXT_SCHEMA,
        "circuit_breaker": CIRCUIT_BREAKER_SCHEMA,
        "retry": RETRY_SCHEMA,
        "critique": CRITIQUE_SCHEMA,
        "discussion": DISCUSSION_SCHEMA,
        "storage": STORAGE_SCHEMA,
        "logging": LOGGING_SCHEMA,
        "metrics": METRICS_SCHEMA,
    },
    "additionalProperties": False,
}
