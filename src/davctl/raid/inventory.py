"""Block device inventory for array planning."""
from __future__ import annotations

import re
from dataclasses import dataclass

from ..executor import SystemExecutor
from ..models import DiskCandidate

_PARTITION_SUFFIX = re.compile(r"p?[0-9]+$")


def disk_name_for_source(source: str) -> str:
    """Return the whole-disk name backing a mount *source* such as ``/dev/sda2``."""
    name = source.strip().split("[", 1)[0]
    name = name.removeprefix("/dev/")
    return _PARTITION_SUFFIX.sub("", name)


def backs_source(disk_name: str, source: str) -> bool:
    """Return True when *disk_name* is the disk behind the mount *source*."""
    source_name = source.strip().split("[", 1)[0].removeprefix("/dev/")
    if not source_name:
        return False
    if disk_name == disk_name_for_source(source):
        return True
    if not source_name.startswith(disk_name):
        return False
    return re.fullmatch(r"p?[0-9]*", source_name[len(disk_name) :]) is not None


def parse_lsblk(output: str) -> list[tuple[str, str, str]]:
    """Parse ``lsblk -dno NAME,SIZE,TYPE`` rows."""
    rows: list[tuple[str, str, str]] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 3:
            continue
        rows.append((parts[0], parts[1], parts[2]))
    return rows


@dataclass(slots=True)
class DiskInventory:
    """Enumerate whole disks, excluding the one hosting ``/``."""

    executor: SystemExecutor
    findmnt_bin: str = "findmnt"
    lsblk_bin: str = "lsblk"

    def root_source(self) -> str:
        """Return the source device of the mounted root filesystem."""
        result = self.executor.run([self.findmnt_bin, "-n", "-o", "SOURCE", "/"])
        return (result.stdout or "").strip()

    def scan(self) -> list[DiskCandidate]:
        """Return eligible disks in ``lsblk`` order."""
        source = self.root_source()
        result = self.executor.run([self.lsblk_bin, "-dno", "NAME,SIZE,TYPE"])
        candidates: list[DiskCandidate] = []
        for name, size, kind in parse_lsblk(result.stdout or ""):
            if kind != "disk":
                continue
            if source and backs_source(name, source):
                continue
            candidates.append(DiskCandidate(path=f"/dev/{name}", size=size))
        return candidates


__all__ = ["DiskInventory", "backs_source", "disk_name_for_source", "parse_lsblk"]
