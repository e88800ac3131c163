"""Drive a :class:`StorageArrayPlanner` through an operator prompt boundary."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from ..exit_codes import ExitCode
from ..providers.packages import PackageProvider
from .commit import RaidCommitError, RaidCommitResult, RaidCommitter
from .inventory import DiskInventory
from .planner import LEVEL_MENU, PlannerState, PlannerStep, StorageArrayPlanner

DONE_TOKEN = "done"


class RaidPrompter(Protocol):
    """Operator interaction used by :class:`RaidSession`."""

    def show(self, step: PlannerStep) -> None:
        """Render a planner step."""
        ...

    def choose_disk(self, menu: Sequence[str], selected: Sequence[str]) -> str:
        """Return a disk token, or ``done`` to finish selection."""
        ...

    def choose_level(self, menu: Sequence[str]) -> str:
        """Return a RAID level token."""
        ...

    def confirm_destruction(self, disks: Sequence[str]) -> str:
        """Return the operator's confirmation answer."""
        ...

    def ask_mountpoint(self) -> str:
        """Return the mountpoint for the new filesystem."""
        ...


@dataclass(slots=True)
class RaidOutcome:
    """Final state of a session."""

    state: PlannerState
    exit_code: ExitCode
    steps: list[PlannerStep] = field(default_factory=list)
    result: RaidCommitResult | None = None
    error: RaidCommitError | None = None


@dataclass(slots=True)
class RaidSession:
    """Scan, ask, validate, confirm and commit, in that order."""

    planner: StorageArrayPlanner
    inventory: DiskInventory
    committer: RaidCommitter
    prompter: RaidPrompter
    packages: PackageProvider | None = None
    required_packages: tuple[str, ...] = ("mdadm",)

    def run(self) -> RaidOutcome:
        """Run the session to a terminal state."""
        planner = self.planner
        steps: list[PlannerStep] = []

        def emit(step: PlannerStep) -> PlannerStep:
            steps.append(step)
            self.prompter.show(step)
            return step

        if self.packages is not None:
            self.packages.install(self.required_packages)

        emit(planner.disks_scanned(self.inventory.scan()))

        while planner.state is PlannerState.SELECTING_DISKS:
            token = self.prompter.choose_disk(
                planner.disk_menu(), [disk.path for disk in planner.selected]
            )
            if token.strip().lower() == DONE_TOKEN:
                emit(planner.finish_selection())
            else:
                emit(planner.select_disk(token))

        while planner.state is PlannerState.SELECTING_LEVEL:
            answer = self.prompter.choose_level([label for _, label in LEVEL_MENU])
            emit(planner.select_level(answer))

        if planner.state is PlannerState.VALIDATING_CONSTRAINTS:
            emit(planner.validate())

        if planner.state is PlannerState.CONFIRMING_DESTRUCTION:
            answer = self.prompter.confirm_destruction([disk.path for disk in planner.selected])
            emit(planner.confirm(answer))

        result: RaidCommitResult | None = None
        error: RaidCommitError | None = None
        if planner.state is PlannerState.COMMITTING:
            try:
                result = self.committer.commit(planner.plan(), self.prompter.ask_mountpoint)
            except RaidCommitError as exc:
                error = exc
                emit(planner.commit_failed(str(exc)))
            else:
                emit(planner.committed(result.mountpoint))

        return RaidOutcome(
            state=planner.state,
            exit_code=planner.exit_code,
            steps=steps,
            result=result,
            error=error,
        )


__all__ = ["DONE_TOKEN", "RaidOutcome", "RaidPrompter", "RaidSession"]
