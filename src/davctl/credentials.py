"""Credential store access and additive credential reconciliation.

The store is a standard basic-auth password file (``username:hash`` per line)
maintained exclusively through ``htpasswd`` so the format stays compatible
with nginx and with manual administration.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .executor import SystemExecutor
from .models import User


class CredentialStoreMissingError(RuntimeError):
    """Raised when a management action needs a credential store that is absent."""


class CredentialError(RuntimeError):
    """Raised when a management action targets an unknown account."""


class CredentialStoreError(RuntimeError):
    """Raised when the password file or its directory cannot be accessed."""


def mask_hash(secret_hash: str) -> str:
    """Return a redacted preview: the first character plus a matching mask."""
    if not secret_hash:
        return ""
    return secret_hash[0] + "*" * (len(secret_hash) - 1)


def parse_entries(text: str) -> dict[str, str]:
    """Parse ``username:hash`` lines, ignoring blanks and comments."""
    entries: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or ":" not in stripped:
            continue
        name, _, secret_hash = stripped.partition(":")
        entries.setdefault(name, secret_hash)
    return entries


@dataclass(slots=True)
class CredentialStore:
    """On-disk username to secret-hash mapping."""

    path: Path
    executor: SystemExecutor
    htpasswd_bin: str = "htpasswd"

    def exists(self) -> bool:
        """Return True when the password file is present."""
        return self.path.is_file()

    def read_entries(self) -> dict[str, str]:
        """Return the current entries; an absent file is an empty store."""
        if not self.exists():
            return {}
        try:
            return parse_entries(self.path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise CredentialStoreError(f"Failed to read {self.path}: {exc}") from exc

    def add(self, user: str, password: str, *, create: bool = False) -> None:
        """Write *user* with *password*, creating the file when *create* is set."""
        args = [self.htpasswd_bin]
        if create:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise CredentialStoreError(
                    f"Failed to create {self.path.parent}: {exc}"
                ) from exc
            args.append("-c")
        args.extend(["-b", str(self.path), user, password])
        self.executor.run(args, sensitive=(password,))

    # Management actions -------------------------------------------------
    def list_users(self) -> list[str]:
        """Return account names in file order."""
        self.require_store()
        return list(self.read_entries())

    def set_password(self, user: str, password: str) -> bool:
        """Add *user* or change its password; return True when the user is new."""
        self.require_store()
        is_new = user not in self.read_entries()
        self.add(user, password)
        return is_new

    def delete_user(self, user: str) -> None:
        """Remove *user* from the store."""
        self.require_store()
        if user not in self.read_entries():
            raise CredentialError(f"User '{user}' not found in {self.path}.")
        self.executor.run([self.htpasswd_bin, "-D", str(self.path), user])

    def require_store(self) -> None:
        """Raise :class:`CredentialStoreMissingError` when the file is absent."""
        if not self.exists():
            raise CredentialStoreMissingError(
                f"The password file '{self.path}' does not exist. Run 'davctl setup' first."
            )


@dataclass(slots=True)
class CredentialReport:
    """Outcome of a credential reconciliation pass."""

    created: bool = False
    added: list[str] = field(default_factory=list)
    existing: dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        """Return True when the store was modified."""
        return self.created or bool(self.added)


@dataclass(slots=True)
class CredentialReconciler:
    """Ensure every desired user has an entry without touching existing hashes."""

    store: CredentialStore

    def reconcile(self, users: Sequence[User], default_password: str) -> CredentialReport:
        """Add missing *users* with *default_password*.

        Existing entries are only reported with a masked preview. Entries for
        users outside *users* are left alone. Any ``htpasswd`` failure
        propagates and aborts the pass.
        """
        report = CredentialReport()
        if not users:
            return report

        if not self.store.exists():
            first, *rest = users
            self.store.add(first.name, default_password, create=True)
            report.created = True
            report.added.append(first.name)
            for user in rest:
                self.store.add(user.name, default_password)
                report.added.append(user.name)
            return report

        entries = self.store.read_entries()
        for user in users:
            if user.name in entries:
                report.existing[user.name] = mask_hash(entries[user.name])
                continue
            self.store.add(user.name, default_password)
            report.added.append(user.name)
        return report


__all__ = [
    "CredentialError",
    "CredentialReconciler",
    "CredentialReport",
    "CredentialStore",
    "CredentialStoreError",
    "CredentialStoreMissingError",
    "mask_hash",
    "parse_entries",
]
