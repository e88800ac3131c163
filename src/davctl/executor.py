"""Narrow capability for running external commands.

All shell-outs (htpasswd, chown, rsync, nginx, systemctl, apt-get, mdadm, ...)
go through a :class:`SystemExecutor` so reconciliation logic can be exercised
against a fake in tests.
"""
from __future__ import annotations

import subprocess
from collections.abc import Collection, Sequence
from typing import Protocol


class CommandError(RuntimeError):
    """Raised when an external command exits non-zero."""

    def __init__(self, message: str, result: subprocess.CompletedProcess[str]) -> None:
        """Store the failing result alongside the message."""
        super().__init__(message)
        self.result = result


class SystemExecutor(Protocol):
    """Run a command and return its exit status and captured output."""

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        sensitive: Collection[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        """Execute *args*; raise :class:`CommandError` on failure when *check* is set."""
        ...


def display_command(args: Sequence[str], sensitive: Collection[str] = ()) -> str:
    """Return *args* joined for display with sensitive values masked."""
    return " ".join("***" if arg in sensitive else str(arg) for arg in args)


def ensure_success(
    result: subprocess.CompletedProcess[str],
    args: Sequence[str],
    *,
    sensitive: Collection[str] = (),
) -> subprocess.CompletedProcess[str]:
    """Raise :class:`CommandError` when *result* reports failure."""
    if result.returncode == 0:
        return result
    stdout = (getattr(result, "stdout", "") or "").strip()
    stderr = (getattr(result, "stderr", "") or "").strip()
    message = stderr or stdout or "no output"
    raise CommandError(
        f"{display_command(args, sensitive)} failed (exit {result.returncode}): {message}",
        result,
    )


class SubprocessExecutor:
    """Execute commands with :func:`subprocess.run`."""

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        sensitive: Collection[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        """Execute *args* and capture text output."""
        command = [str(arg) for arg in args]
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CommandError(
                f"{command[0]} not found: {exc}",
                subprocess.CompletedProcess(command, returncode=127, stdout="", stderr=str(exc)),
            ) from exc
        if check:
            ensure_success(result, command, sensitive=sensitive)
        return result


__all__ = [
    "CommandError",
    "SubprocessExecutor",
    "SystemExecutor",
    "display_command",
    "ensure_success",
]
