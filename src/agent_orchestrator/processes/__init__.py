"""
Bounded execution queue: process types, persistence and the manager.
"""

from .manager import ProcessManager
from .store import ProcessFilter, ProcessStore
from .types import VALID_TRANSITIONS, ProcessRecord, ProcessStatus, ProcessUnit

__all__ = [
    "ProcessManager",
    "ProcessStore",
    "ProcessFilter",
    "ProcessRecord",
    "ProcessStatus",
    "ProcessUnit",
    "VALID_TRANSITIONS",
]
