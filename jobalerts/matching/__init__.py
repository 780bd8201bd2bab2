"""Alert matching: evaluate saved alerts against the search index.

This module provides:
- AlertMatchingOrchestrator: runs one frequency tier and redelivers unsent matches
- AlertRunResult / AlertOutcome: run and per-alert results
"""

from .models import AlertOutcome, AlertRunResult
from .orchestrator import AlertMatchingOrchestrator

__all__ = [
    "AlertMatchingOrchestrator",
    "AlertRunResult",
    "AlertOutcome",
]
