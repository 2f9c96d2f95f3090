"""
Base types for configuration.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
LogFormat = Literal["text", "json"]
StorageBackend = Literal["memory", "redis"]


class FailurePolicy(str, Enum):
    """What a failed required step does to its workflow."""

    STRICT = "strict"  # fail the workflow, skip everything not yet finished
    LENIENT = "lenient"  # skip dependents only, let independent branches finish


class ConsensusStrategy(str, Enum):
    """Rule deciding whether a discussion round reached agreement."""

    UNANIMOUS = "unanimous"
    MAJORITY = "majority"
    WEIGHTED = "weighted"
    FACILITATOR = "facilitator"


__all__ = [
    "LogLevel",
    "LogFormat",
    "StorageBackend",
    "FailurePolicy",
    "ConsensusStrategy",
]
