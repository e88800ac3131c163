"""Package manager provider (Debian ``apt-get``)."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..executor import CommandError, SystemExecutor


class PackageError(RuntimeError):
    """Raised when package installation fails."""


@dataclass(slots=True)
class PackageProvider:
    """Install and purge packages non-interactively."""

    executor: SystemExecutor
    apt_get_bin: str = "apt-get"

    def install(self, packages: Sequence[str]) -> None:
        """Refresh the index and install *packages*."""
        if not packages:
            return
        self._apt(["update"])
        self._apt(["install", "-y", *packages])

    def purge(self, patterns: Sequence[str]) -> list[subprocess.CompletedProcess[str]]:
        """Purge *patterns* and autoremove leftovers; failures are returned, not raised."""
        results: list[subprocess.CompletedProcess[str]] = []
        if patterns:
            results.append(
                self.executor.run(
                    [self.apt_get_bin, "remove", "--purge", "-y", *patterns],
                    check=False,
                )
            )
        results.append(self.executor.run([self.apt_get_bin, "autoremove", "-y"], check=False))
        return results

    def _apt(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        try:
            return self.executor.run([self.apt_get_bin, *args])
        except CommandError as exc:
            raise PackageError(str(exc)) from exc


__all__ = ["PackageError", "PackageProvider"]
