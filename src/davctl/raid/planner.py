"""Interactive RAID planning as a pure state machine.

The planner never prompts and never runs commands. Callers feed it events
(scan results, operator answers, commit outcome) and render the returned
:class:`PlannerStep`. Terminal states carry the process exit code.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..exit_codes import ExitCode
from ..models import RAID_LEVELS, RAID_MIN_DISKS, DiskCandidate, RaidPlan

CONFIRMATION_TOKEN = "YES"
MIN_ARRAY_DISKS = 2

LEVEL_MENU: tuple[tuple[int, str], ...] = (
    (0, "RAID 0 (striping: performance, no redundancy)"),
    (1, "RAID 1 (mirroring: redundancy)"),
    (5, "RAID 5 (parity: needs at least 3 disks)"),
)


class PlannerState(str, Enum):
    """Lifecycle of one planning session."""

    SCANNING_DISKS = "scanning-disks"
    SELECTING_DISKS = "selecting-disks"
    SELECTING_LEVEL = "selecting-level"
    VALIDATING_CONSTRAINTS = "validating-constraints"
    CONFIRMING_DESTRUCTION = "confirming-destruction"
    COMMITTING = "committing"
    MOUNTED = "mounted"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PlannerStateError(RuntimeError):
    """Raised when an event arrives in a state that does not accept it."""


@dataclass(frozen=True, slots=True)
class PlannerStep:
    """Result of feeding one event to the planner."""

    state: PlannerState
    message: str = ""
    error: str | None = None


@dataclass(slots=True)
class StorageArrayPlanner:
    """Walk the operator from disk discovery to a confirmed :class:`RaidPlan`."""

    device: Path = Path("/dev/md0")
    fstype: str = "ext4"
    state: PlannerState = PlannerState.SCANNING_DISKS
    candidates: list[DiskCandidate] = field(default_factory=list)
    selected: list[DiskCandidate] = field(default_factory=list)
    level: int | None = None
    mountpoint: Path | None = None
    failure_code: ExitCode = ExitCode.VALIDATION

    # Events ------------------------------------------------------------
    def disks_scanned(self, candidates: Sequence[DiskCandidate]) -> PlannerStep:
        """Accept the scan result; an empty set ends the session."""
        self._expect(PlannerState.SCANNING_DISKS)
        self.candidates = list(candidates)
        if not self.candidates:
            return self._move(
                PlannerState.FAILED,
                error=(
                    "No eligible disks found besides the one hosting '/'. "
                    "Use 'davctl setup' to serve WebDAV from the existing disk instead."
                ),
            )
        return self._move(
            PlannerState.SELECTING_DISKS,
            f"Found {len(self.candidates)} eligible disk(s).",
        )

    def select_disk(self, token: str) -> PlannerStep:
        """Add the disk named by *token* (menu index or device path)."""
        self._expect(PlannerState.SELECTING_DISKS)
        disk = self._resolve_disk(token)
        if disk is None:
            return PlannerStep(
                self.state, error=f"'{token.strip()}' is not one of the listed disks."
            )
        if disk in self.selected:
            return PlannerStep(self.state, error=f"{disk.path} is already selected.")
        self.selected.append(disk)
        return PlannerStep(self.state, f"Selected {disk.path}.")

    def finish_selection(self) -> PlannerStep:
        """Close disk selection; at least two disks are required."""
        self._expect(PlannerState.SELECTING_DISKS)
        if len(self.selected) < MIN_ARRAY_DISKS:
            return self._move(
                PlannerState.FAILED,
                error=f"At least {MIN_ARRAY_DISKS} disks are required for a RAID array.",
            )
        return self._move(
            PlannerState.SELECTING_LEVEL,
            "Selected disks: " + " ".join(disk.path for disk in self.selected),
        )

    def select_level(self, token: str) -> PlannerStep:
        """Record the RAID level; unknown answers keep the prompt open."""
        self._expect(PlannerState.SELECTING_LEVEL)
        level = parse_level(token)
        if level is None:
            return PlannerStep(
                self.state, error=f"'{token.strip()}' is not a supported RAID level."
            )
        self.level = level
        return self._move(PlannerState.VALIDATING_CONSTRAINTS, f"RAID {level} selected.")

    def validate(self) -> PlannerStep:
        """Check the level against the number of selected disks."""
        self._expect(PlannerState.VALIDATING_CONSTRAINTS)
        if self.level is None:
            raise PlannerStateError("No RAID level has been selected.")
        minimum = RAID_MIN_DISKS[self.level]
        if len(self.selected) < minimum:
            return self._move(
                PlannerState.FAILED,
                error=(
                    f"RAID {self.level} requires at least {minimum} disks; "
                    f"{len(self.selected)} selected."
                ),
            )
        return self._move(
            PlannerState.CONFIRMING_DESTRUCTION,
            "ALL DATA on " + " ".join(disk.path for disk in self.selected) + " WILL BE DESTROYED.",
        )

    def confirm(self, token: str) -> PlannerStep:
        """Proceed only on the exact confirmation token."""
        self._expect(PlannerState.CONFIRMING_DESTRUCTION)
        if token.strip() != CONFIRMATION_TOKEN:
            return self._move(PlannerState.CANCELLED, "Operation cancelled; no disks were touched.")
        return self._move(PlannerState.COMMITTING, f"Creating RAID {self.level} on {self.device}.")

    def committed(self, mountpoint: Path | str) -> PlannerStep:
        """Record a successful commit."""
        self._expect(PlannerState.COMMITTING)
        self.mountpoint = Path(mountpoint)
        return self._move(
            PlannerState.MOUNTED,
            f"RAID {self.level} array {self.device} mounted at {self.mountpoint}.",
        )

    def commit_failed(self, message: str) -> PlannerStep:
        """Record a commit failure."""
        self._expect(PlannerState.COMMITTING)
        self.failure_code = ExitCode.PROVIDER
        return self._move(PlannerState.FAILED, error=message)

    # Queries -----------------------------------------------------------
    @property
    def exit_code(self) -> ExitCode:
        """Process exit code matching the current state."""
        if self.state is PlannerState.FAILED:
            return self.failure_code
        return ExitCode.OK

    def disk_menu(self) -> list[str]:
        """Return the candidate list rendered as menu labels."""
        return [disk.label for disk in self.candidates]

    def plan(self) -> RaidPlan:
        """Return the confirmed plan."""
        if self.state not in (PlannerState.COMMITTING, PlannerState.MOUNTED) or self.level is None:
            raise PlannerStateError("No confirmed RAID plan is available yet.")
        plan = RaidPlan(
            level=self.level,
            disks=tuple(self.selected),
            device=self.device,
            fstype=self.fstype,
            mountpoint=self.mountpoint,
        )
        plan.validate()
        return plan

    # ------------------------------------------------------------------
    def _expect(self, *states: PlannerState) -> None:
        if self.state not in states:
            raise PlannerStateError(f"Event not valid in state '{self.state.value}'.")

    def _move(
        self,
        state: PlannerState,
        message: str = "",
        *,
        error: str | None = None,
    ) -> PlannerStep:
        self.state = state
        return PlannerStep(state, message, error)

    def _resolve_disk(self, token: str) -> DiskCandidate | None:
        text = token.strip()
        if not text:
            return None
        if text.isdigit():
            index = int(text)
            if 1 <= index <= len(self.candidates):
                return self.candidates[index - 1]
            return None
        for disk in self.candidates:
            if disk.path == text:
                return disk
        return None


def parse_level(token: str) -> int | None:
    """Map a level answer such as ``5`` or ``RAID 5`` to a supported level."""
    text = token.strip()
    if text.upper().startswith("RAID"):
        text = text[4:].strip()
    if not text.isdigit():
        return None
    value = int(text)
    return value if value in RAID_LEVELS else None


__all__ = [
    "CONFIRMATION_TOKEN",
    "LEVEL_MENU",
    "PlannerState",
    "PlannerStateError",
    "PlannerStep",
    "StorageArrayPlanner",
    "parse_level",
]
