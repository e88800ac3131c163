"""Storage location provisioning: directory trees, ownership and root migration."""
from __future__ import annotations

import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from .executor import CommandError, SystemExecutor
from .models import DesiredState, MigrationIntent, StorageLocation
from .providers.nginx import PreviousUnit


class ProvisioningError(RuntimeError):
    """Raised when a storage tree cannot be created or secured."""


@dataclass(slots=True)
class DirectoryAction:
    """Single step required to bring one storage tree into shape."""

    kind: Literal["mkdir", "chown", "chmod"]
    path: Path
    description: str
    command: list[str] | None = None


@dataclass(slots=True)
class DirectoryPlan:
    """Ordered actions plus any warnings discovered while planning."""

    actions: list[DirectoryAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MigrationPlan:
    """Migrations worth offering to the operator, and those that were ruled out."""

    intents: list[MigrationIntent] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MigrationResult:
    """Outcome of moving one old root into a new one."""

    intent: MigrationIntent
    source_removed: bool
    leftovers: list[Path] = field(default_factory=list)


@dataclass(slots=True)
class ProvisionReport:
    """What a provisioning pass did."""

    created: list[Path] = field(default_factory=list)
    secured: list[Path] = field(default_factory=list)
    migrated: list[MigrationResult] = field(default_factory=list)
    skipped_migrations: list[MigrationIntent] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class LocationProvisioner:
    """Create per-location trees and apply the service ownership policy."""

    executor: SystemExecutor
    owner: str = "www-data"
    group: str = "www-data"
    mode: int = 0o750
    chown_bin: str = "chown"
    chmod_bin: str = "chmod"
    rsync_bin: str = "rsync"

    def plan(self, state: DesiredState) -> DirectoryPlan:
        """Return the actions needed to provision every desired location."""
        plan = DirectoryPlan()
        for location in state.locations:
            self._plan_location(plan, location, state)
        return plan

    def apply(self, plan: DirectoryPlan, report: ProvisionReport | None = None) -> ProvisionReport:
        """Execute *plan*; any failure raises :class:`ProvisioningError`."""
        report = report or ProvisionReport()
        report.warnings.extend(plan.warnings)
        for action in plan.actions:
            if action.kind == "mkdir":
                if action.path.is_dir():
                    continue
                try:
                    action.path.mkdir(parents=True)
                except OSError as exc:
                    raise ProvisioningError(f"Failed to create {action.path}: {exc}") from exc
                report.created.append(action.path)
                continue
            if action.command is None:
                continue
            try:
                self.executor.run(action.command)
            except CommandError as exc:
                raise ProvisioningError(str(exc)) from exc
            if action.kind == "chmod":
                report.secured.append(action.path)
        return report

    def provision(
        self,
        state: DesiredState,
        report: ProvisionReport | None = None,
    ) -> ProvisionReport:
        """Plan and apply in one step."""
        return self.apply(self.plan(state), report)

    # Migration ---------------------------------------------------------
    def detect_migrations(
        self,
        state: DesiredState,
        previous: Iterable[PreviousUnit],
    ) -> MigrationPlan:
        """Compare previously routed roots with *state* and propose moves."""
        result = MigrationPlan()
        seen: set[Path] = set()
        for unit in previous:
            old_root = unit.root
            if old_root is None or old_root in seen:
                continue
            seen.add(old_root)
            if old_root in state.roots or not old_root.is_dir():
                continue
            target = _match_target(state.locations, unit.port)
            if target is None:
                result.warnings.append(
                    f"Previous root {old_root} is no longer configured and no new "
                    "location matches its port; its data was left in place."
                )
                continue
            if _nested(old_root, target.root):
                result.warnings.append(
                    f"Cannot migrate {old_root} into {target.root}: one contains the other."
                )
                continue
            result.intents.append(
                MigrationIntent(old_root=old_root, new_root=target.root, port=target.port)
            )
        return result

    def migrate(self, intent: MigrationIntent) -> MigrationResult:
        """Move the content of ``old_root`` into ``new_root``.

        ``rsync --remove-source-files`` deletes each source file only after it
        has been transferred; emptied source directories are pruned afterwards.
        """
        try:
            intent.new_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ProvisioningError(f"Failed to create {intent.new_root}: {exc}") from exc
        try:
            self.executor.run(
                [
                    self.rsync_bin,
                    "-a",
                    "--remove-source-files",
                    f"{intent.old_root}/",
                    f"{intent.new_root}/",
                ]
            )
        except CommandError as exc:
            raise ProvisioningError(f"Data migration failed: {exc}") from exc

        leftovers = _prune_empty_dirs(intent.old_root)
        return MigrationResult(
            intent=intent,
            source_removed=not intent.old_root.exists(),
            leftovers=leftovers,
        )

    # ------------------------------------------------------------------
    def _plan_location(
        self,
        plan: DirectoryPlan,
        location: StorageLocation,
        state: DesiredState,
    ) -> None:
        root = location.root
        if root.exists() and not root.is_dir():
            raise ProvisioningError(f"Storage root {root} exists but is not a directory.")
        plan.actions.append(
            DirectoryAction(kind="mkdir", path=root, description=f"Ensure {root} exists.")
        )
        for user in state.ordinary_users:
            subtree = location.user_root(user)
            if subtree.exists() and not subtree.is_dir():
                plan.warnings.append(
                    f"{subtree} exists but is not a directory; '{user.name}' cannot use it."
                )
                continue
            plan.actions.append(
                DirectoryAction(
                    kind="mkdir",
                    path=subtree,
                    description=f"Ensure {subtree} exists for '{user.name}'.",
                )
            )
        plan.actions.append(
            DirectoryAction(
                kind="chown",
                path=root,
                description=f"Give {self.owner}:{self.group} ownership of {root}.",
                command=[self.chown_bin, "-R", f"{self.owner}:{self.group}", str(root)],
            )
        )
        plan.actions.append(
            DirectoryAction(
                kind="chmod",
                path=root,
                description=f"Apply mode {self.mode:o} below {root}.",
                command=[self.chmod_bin, "-R", f"{self.mode:o}", str(root)],
            )
        )


def _match_target(
    locations: Sequence[StorageLocation],
    port: int | None,
) -> StorageLocation | None:
    if port is not None:
        for location in locations:
            if location.port == port:
                return location
    if len(locations) == 1:
        return locations[0]
    return None


def _nested(first: Path, second: Path) -> bool:
    return first.is_relative_to(second) or second.is_relative_to(first)


def _prune_empty_dirs(root: Path) -> list[Path]:
    """Remove empty directories below and including *root*; return what remains."""
    if not root.is_dir():
        return []
    for current, _dirs, _files in os.walk(root, topdown=False):
        try:
            Path(current).rmdir()
        except OSError:
            continue
    if not root.exists():
        return []
    return sorted(path for path in root.rglob("*") if not path.is_dir()) or [root]


__all__ = [
    "DirectoryAction",
    "DirectoryPlan",
    "LocationProvisioner",
    "MigrationPlan",
    "MigrationResult",
    "ProvisionReport",
    "ProvisioningError",
]
