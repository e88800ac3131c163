"""Destructive array creation: mdadm, filesystem, fstab, mount."""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from ..executor import CommandError, SystemExecutor
from ..models import DesiredStateError, RaidPlan, normalize_mountpoint

COMMIT_STEPS: tuple[str, ...] = (
    "create-array",
    "settle",
    "make-filesystem",
    "create-mountpoint",
    "register-fstab",
    "persist-array",
    "mount",
)

MountpointPrompt = Callable[[], str]


class RaidCommitError(RuntimeError):
    """Raised when a commit step fails; nothing already done is rolled back."""

    def __init__(self, message: str, *, completed: list[str], failed_step: str) -> None:
        """Record how far the commit got."""
        super().__init__(message)
        self.completed = list(completed)
        self.failed_step = failed_step


@dataclass(slots=True)
class RaidCommitResult:
    """Summary of a successful commit."""

    plan: RaidPlan
    mountpoint: Path
    uuid: str
    fstab_line: str
    completed: list[str] = field(default_factory=list)


def fstab_entry(uuid: str, mountpoint: Path, fstype: str) -> str:
    """Return the fstab line mounting the array by UUID."""
    return f"UUID={uuid} {mountpoint} {fstype} defaults,nofail 0 2"


@dataclass(slots=True)
class RaidCommitter:
    """Run the commit sequence in a fixed order with no resume."""

    executor: SystemExecutor
    fstab: Path = Path("/etc/fstab")
    mdadm_conf: Path = Path("/etc/mdadm/mdadm.conf")
    settle_seconds: float = 10.0
    sleeper: Callable[[float], None] = time.sleep
    mdadm_bin: str = "mdadm"
    blkid_bin: str = "blkid"
    mount_bin: str = "mount"
    update_initramfs_bin: str = "update-initramfs"

    def commit(self, plan: RaidPlan, ask_mountpoint: MountpointPrompt) -> RaidCommitResult:
        """Create the array described by *plan* and mount it.

        *ask_mountpoint* is called after the filesystem exists and is asked
        again until it returns an absolute path without whitespace. An aborted
        prompt raises :class:`RaidCommitError` listing the steps already run.
        """
        plan.validate()
        completed: list[str] = []
        device = str(plan.device)

        def step(name: str, action: Callable[[], object]) -> object:
            try:
                value = action()
            except (CommandError, OSError) as exc:
                raise RaidCommitError(
                    f"Step '{name}' failed: {exc}",
                    completed=completed,
                    failed_step=name,
                ) from exc
            completed.append(name)
            return value

        step(
            "create-array",
            lambda: self.executor.run(
                [
                    self.mdadm_bin,
                    "--create",
                    device,
                    f"--level={plan.level}",
                    f"--raid-devices={len(plan.disks)}",
                    *plan.disk_paths,
                    "--run",
                ]
            ),
        )
        step("settle", lambda: self.sleeper(self.settle_seconds))
        step("make-filesystem", lambda: self.executor.run([f"mkfs.{plan.fstype}", "-F", device]))

        if plan.mountpoint is not None:
            mountpoint = normalize_mountpoint(plan.mountpoint)
        else:
            try:
                mountpoint = _prompt_mountpoint(ask_mountpoint)
            except (EOFError, KeyboardInterrupt) as exc:
                raise RaidCommitError(
                    "Mount point prompt aborted.",
                    completed=completed,
                    failed_step="create-mountpoint",
                ) from exc
        step("create-mountpoint", lambda: mountpoint.mkdir(parents=True, exist_ok=True))

        uuid_holder: list[str] = []

        def register() -> None:
            result = self.executor.run([self.blkid_bin, "-s", "UUID", "-o", "value", device])
            uuid = (result.stdout or "").strip()
            if not uuid:
                raise OSError(f"blkid reported no UUID for {device}")
            uuid_holder.append(uuid)
            _append_line(self.fstab, fstab_entry(uuid, mountpoint, plan.fstype))

        step("register-fstab", register)

        def persist() -> None:
            result = self.executor.run([self.mdadm_bin, "--detail", "--scan"])
            _append_line(self.mdadm_conf, (result.stdout or "").strip())
            self.executor.run([self.update_initramfs_bin, "-u"])

        step("persist-array", persist)
        step("mount", lambda: self.executor.run([self.mount_bin, "-a"]))

        uuid = uuid_holder[0]
        return RaidCommitResult(
            plan=plan,
            mountpoint=mountpoint,
            uuid=uuid,
            fstab_line=fstab_entry(uuid, mountpoint, plan.fstype),
            completed=completed,
        )


def _prompt_mountpoint(ask: MountpointPrompt) -> Path:
    while True:
        try:
            return normalize_mountpoint(ask())
        except DesiredStateError:
            continue


def _append_line(path: Path, line: str) -> None:
    if not line:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    existing = path.read_text(encoding="utf-8") if path.exists() else ""
    prefix = "" if not existing or existing.endswith("\n") else "\n"
    with path.open("a", encoding="utf-8") as handle:
        handle.write(f"{prefix}{line}\n")


__all__ = [
    "COMMIT_STEPS",
    "RaidCommitError",
    "RaidCommitResult",
    "RaidCommitter",
    "fstab_entry",
]
