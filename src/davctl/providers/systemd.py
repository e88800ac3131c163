"""Systemd provider for the nginx service that serves the routing units."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass

from ..executor import CommandError, SystemExecutor


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Stop and restart the web server unit."""

    executor: SystemExecutor
    service: str = "nginx"
    systemctl_bin: str = "systemctl"

    def restart(self) -> subprocess.CompletedProcess[str]:
        """Restart the service so new routing units take effect."""
        return self._systemctl("restart")

    def stop(self, *, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Stop the service; with ``check=False`` failures are returned, not raised."""
        return self._systemctl("stop", check=check)

    # ------------------------------------------------------------------
    def _systemctl(self, command: str, *, check: bool = True) -> subprocess.CompletedProcess[str]:
        args = [self.systemctl_bin, command, self.service]
        try:
            return self.executor.run(args, check=check)
        except CommandError as exc:
            raise SystemdError(str(exc)) from exc


__all__ = ["SystemdError", "SystemdProvider"]
