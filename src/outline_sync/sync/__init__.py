"""Reconciliation of the Outline workspace against the directory."""

from .allowlist import AllowlistPolicy
from .engine import PhaseResult, ReconciliationEngine
from .orchestrator import PHASE_ORDER, RunResult, SyncRunner, run_sync
from .snapshot import SnapshotCache, SnapshotKind

__all__ = [
    "PHASE_ORDER",
    "AllowlistPolicy",
    "PhaseResult",
    "ReconciliationEngine",
    "RunResult",
    "SnapshotCache",
    "SnapshotKind",
    "SyncRunner",
    "run_sync",
]
