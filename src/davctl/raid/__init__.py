"""Software RAID planning and creation."""
from __future__ import annotations

from .commit import RaidCommitError, RaidCommitResult, RaidCommitter
from .inventory import DiskInventory
from .planner import PlannerState, PlannerStateError, PlannerStep, StorageArrayPlanner
from .session import RaidOutcome, RaidPrompter, RaidSession

__all__ = [
    "DiskInventory",
    "PlannerState",
    "PlannerStateError",
    "PlannerStep",
    "RaidCommitError",
    "RaidCommitResult",
    "RaidCommitter",
    "RaidOutcome",
    "RaidPrompter",
    "RaidSession",
    "StorageArrayPlanner",
]
