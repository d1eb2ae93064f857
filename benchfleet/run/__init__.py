"""Benchmark execution modules."""

from .collector import ResultCollector
from .executor import RemoteExecutor
from .orchestrator import Orchestrator

__all__ = [
    "Orchestrator",
    "RemoteExecutor",
    "ResultCollector",
]
