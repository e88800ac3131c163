"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import hashlib
import subprocess
from collections.abc import Callable, Collection, Sequence
from pathlib import Path

import pytest
import yaml

from davctl.executor import ensure_success

Responder = Callable[[list[str]], subprocess.CompletedProcess[str]]


def fake_hash(password: str) -> str:
    """Return a stable stand-in for an htpasswd hash."""
    return "$apr1$" + hashlib.sha256(password.encode("utf-8")).hexdigest()[:22]


class FakeExecutor:
    """Record commands and emulate the few tools whose effects tests observe.

    ``htpasswd`` edits the password file like the real tool. Everything else
    succeeds with empty output unless a response was scripted for a command
    prefix via :meth:`script` or :meth:`fail`.
    """

    def __init__(self) -> None:
        """Start with no history and no scripted responses."""
        self.commands: list[list[str]] = []
        self.sensitive: list[tuple[str, ...]] = []
        self._responses: list[tuple[tuple[str, ...], Responder]] = []

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        sensitive: Collection[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        """Record *args* and return the scripted or emulated result."""
        command = [str(arg) for arg in args]
        self.commands.append(command)
        self.sensitive.append(tuple(sensitive))
        result = self._respond(command)
        if check:
            ensure_success(result, command, sensitive=sensitive)
        return result

    def script(self, *prefix: str, stdout: str = "", returncode: int = 0, stderr: str = "") -> None:
        """Answer commands starting with *prefix* with a fixed result."""
        def responder(command: list[str]) -> subprocess.CompletedProcess[str]:
            return subprocess.CompletedProcess(command, returncode, stdout, stderr)

        self._responses.insert(0, (tuple(prefix), responder))

    def fail(self, *prefix: str, returncode: int = 1, stderr: str = "failed") -> None:
        """Make commands starting with *prefix* exit non-zero."""
        self.script(*prefix, returncode=returncode, stderr=stderr)

    def calls(self, program: str) -> list[list[str]]:
        """Return recorded commands whose executable is *program*."""
        return [command for command in self.commands if command[0] == program]

    def programs(self) -> list[str]:
        """Return the executables in call order."""
        return [command[0] for command in self.commands]

    # ------------------------------------------------------------------
    def _respond(self, command: list[str]) -> subprocess.CompletedProcess[str]:
        for prefix, responder in self._responses:
            if tuple(command[: len(prefix)]) == prefix:
                return responder(command)
        if command[0] == "htpasswd":
            return self._htpasswd(command)
        return subprocess.CompletedProcess(command, 0, "", "")

    def _htpasswd(self, command: list[str]) -> subprocess.CompletedProcess[str]:
        flags = [arg for arg in command[1:] if arg.startswith("-")]
        positional = [arg for arg in command[1:] if not arg.startswith("-")]
        path = Path(positional[0])
        user = positional[1]
        lines: list[str] = []
        if path.exists() and "-c" not in flags:
            lines = path.read_text(encoding="utf-8").splitlines()
        if "-D" in flags:
            remaining = [line for line in lines if line.split(":", 1)[0] != user]
            path.write_text("".join(f"{line}\n" for line in remaining), encoding="utf-8")
            message = f"Deleting password for user {user}\n"
            return subprocess.CompletedProcess(command, 0, "", message)
        if not path.parent.exists():
            return subprocess.CompletedProcess(command, 1, "", f"cannot create file {path}\n")
        entry = f"{user}:{fake_hash(positional[2])}"
        replaced = False
        for index, line in enumerate(lines):
            if line.split(":", 1)[0] == user:
                lines[index] = entry
                replaced = True
        if not replaced:
            lines.append(entry)
        path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
        return subprocess.CompletedProcess(command, 0, "", f"Adding password for user {user}\n")


@pytest.fixture
def executor() -> FakeExecutor:
    """Return a fresh fake executor."""
    return FakeExecutor()


@pytest.fixture
def config_env(tmp_path: Path) -> dict[str, str]:
    """Write a config file rooted in *tmp_path* and return the CLI environment."""
    nginx_dir = tmp_path / "etc" / "nginx"
    (nginx_dir / "sites-available").mkdir(parents=True)
    (nginx_dir / "sites-enabled").mkdir(parents=True)
    (nginx_dir / "nginx.conf").write_text(
        "user www-data;\nworker_processes 1;\nevents {}\n", encoding="utf-8"
    )
    payload = {
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "lock_timeout": 1,
        "users": ["alice", "bob", "admin"],
        "locations": [{"root": str(tmp_path / "srv" / "webdav"), "port": 8080}],
        "credential_file": str(nginx_dir / "webdav.passwd"),
        "nginx": {
            "config_dir": str(nginx_dir),
            "state_dir": str(tmp_path / "var" / "lib" / "nginx"),
            "log_dir": str(tmp_path / "var" / "log" / "nginx"),
        },
        "raid": {
            "fstab": str(tmp_path / "etc" / "fstab"),
            "mdadm_conf": str(tmp_path / "etc" / "mdadm" / "mdadm.conf"),
            "settle_seconds": 0,
        },
    }
    config_file = tmp_path / "davctl.yml"
    config_file.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return {"DAVCTL_CONFIG_FILE": str(config_file)}
