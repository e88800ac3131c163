"""Reconciliation driver: desired state in, running WebDAV service out.

The driver sequences the components and owns the ordering guarantees:

* storage trees exist before credentials or routing are written;
* routing units are validated with ``nginx -t`` before the service restarts,
  so a broken configuration never replaces a working one in memory;
* rejected units are rolled back so the previous set stays on disk.

Each step is recorded on the optional :class:`~davctl.logging.OperationScope`.
"""
from __future__ import annotations

import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .credentials import CredentialReconciler, CredentialReport
from .executor import CommandError
from .logging import OperationScope
from .models import DesiredState, MigrationIntent, RoutingSettings
from .providers.nginx import NginxError, NginxProvider, NginxRenderResult
from .providers.packages import PackageProvider
from .providers.systemd import SystemdError, SystemdProvider
from .provisioning import LocationProvisioner, ProvisionReport

MigrationConfirm = Callable[[MigrationIntent], bool]


class CleanupError(RuntimeError):
    """Raised when a managed tree cannot be removed."""


@dataclass(slots=True)
class ReconcileReport:
    """Aggregated outcome of one reconcile pass."""

    packages: list[str] = field(default_factory=list)
    performance_changed: bool = False
    workers_tuned: bool = False
    provision: ProvisionReport = field(default_factory=ProvisionReport)
    credentials: CredentialReport = field(default_factory=CredentialReport)
    routing: NginxRenderResult = field(default_factory=NginxRenderResult)
    restarted: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def changes(self) -> int:
        """Count of changed artefacts, for the operation log."""
        return (
            len(self.packages)
            + int(self.performance_changed)
            + int(self.workers_tuned)
            + len(self.provision.created)
            + len(self.provision.migrated)
            + len(self.credentials.added)
            + len(self.routing.written)
        )


@dataclass(slots=True)
class CleanupReport:
    """What a cleanup pass removed and which best-effort steps failed."""

    stopped: bool = False
    purged: bool = False
    removed: list[Path] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ReconciliationDriver:
    """Bring the host to the desired state, in a fixed order."""

    nginx: NginxProvider
    systemd: SystemdProvider
    packages: PackageProvider
    provisioner: LocationProvisioner
    credentials: CredentialReconciler
    webdav_packages: tuple[str, ...] = ("nginx-full", "apache2-utils")
    purge_patterns: tuple[str, ...] = ("nginx*",)
    managed_trees: tuple[Path, ...] = (Path("/etc/nginx"), Path("/var/lib/nginx"))

    def reconcile(
        self,
        state: DesiredState,
        settings: RoutingSettings,
        *,
        confirm_migration: MigrationConfirm,
        install_packages: bool = False,
        op: OperationScope | None = None,
    ) -> ReconcileReport:
        """Run every reconcile step; the first failure propagates."""
        report = ReconcileReport()

        if install_packages and self.webdav_packages:
            self.packages.install(self.webdav_packages)
            report.packages.extend(self.webdav_packages)
            _step(op, "packages.install", " ".join(self.webdav_packages))

        report.performance_changed = self.nginx.render_performance()
        report.workers_tuned = self.nginx.tune_worker_processes()
        _step(
            op,
            "nginx.performance",
            "updated" if report.performance_changed or report.workers_tuned else "unchanged",
        )

        self._migrate(state, confirm_migration, report, op)

        self.provisioner.provision(state, report.provision)
        report.warnings.extend(report.provision.warnings)
        _step(op, "storage.provision", ", ".join(str(root) for root in sorted(state.roots)))

        report.credentials = self.credentials.reconcile(state.users, state.default_password)
        _step(
            op,
            "credentials.reconcile",
            f"added={','.join(report.credentials.added) or '-'} "
            f"existing={','.join(report.credentials.existing) or '-'}",
        )

        report.routing = self.nginx.write_units(state.locations, settings)
        _step(
            op,
            "nginx.units",
            f"written={len(report.routing.written)} unchanged={len(report.routing.unchanged)}",
        )

        try:
            self.nginx.test_config()
        except NginxError:
            _step(op, "nginx.validate", status="error")
            self.nginx.rollback(report.routing)
            _step(op, "nginx.rollback", f"restored={len(report.routing.previous)}")
            raise
        _step(op, "nginx.validate")

        self.systemd.restart()
        report.restarted = True
        _step(op, "service.restart", self.systemd.service)
        return report

    def cleanup(self, credential_file: Path, *, op: OperationScope | None = None) -> CleanupReport:
        """Stop and purge nginx, then delete its trees and the credential file.

        Stopping and purging are best-effort. Storage roots are never touched.
        """
        report = CleanupReport()
        try:
            result = self.systemd.stop(check=False)
            report.stopped = result.returncode == 0
            if not report.stopped:
                report.warnings.append(
                    f"Stopping {self.systemd.service} exited {result.returncode}."
                )
        except SystemdError as exc:
            report.warnings.append(f"Stopping {self.systemd.service} failed: {exc}")
        _step(op, "service.stop", status="success" if report.stopped else "warning")

        try:
            results = self.packages.purge(self.purge_patterns)
        except CommandError as exc:
            report.warnings.append(f"Package purge failed: {exc}")
        else:
            failed = [result for result in results if result.returncode != 0]
            report.purged = not failed
            for result in failed:
                report.warnings.append(f"{' '.join(result.args)} exited {result.returncode}.")
        _step(op, "packages.purge", status="success" if report.purged else "warning")

        for tree in self.managed_trees:
            if not tree.exists():
                continue
            try:
                shutil.rmtree(tree)
            except OSError as exc:
                raise CleanupError(f"Failed to remove {tree}: {exc}") from exc
            report.removed.append(tree)

        if credential_file.exists():
            try:
                credential_file.unlink()
            except OSError as exc:
                raise CleanupError(f"Failed to remove {credential_file}: {exc}") from exc
            report.removed.append(credential_file)
        _step(op, "cleanup.remove", ", ".join(str(path) for path in report.removed) or "-")
        return report

    # ------------------------------------------------------------------
    def _migrate(
        self,
        state: DesiredState,
        confirm_migration: MigrationConfirm,
        report: ReconcileReport,
        op: OperationScope | None,
    ) -> None:
        plan = self.provisioner.detect_migrations(state, self.nginx.previous_units())
        report.warnings.extend(plan.warnings)
        for intent in plan.intents:
            if not confirm_migration(intent):
                report.provision.skipped_migrations.append(intent)
                _step(op, "storage.migrate", f"{intent.old_root} declined", status="skipped")
                continue
            result = self.provisioner.migrate(intent)
            report.provision.migrated.append(result)
            if result.leftovers:
                report.warnings.append(
                    f"{intent.old_root} still holds {len(result.leftovers)} item(s) "
                    "that were not moved; review them manually."
                )
            _step(op, "storage.migrate", f"{intent.old_root} -> {intent.new_root}")


def _step(
    op: OperationScope | None,
    name: str,
    detail: str | None = None,
    *,
    status: str = "success",
) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = [
    "CleanupError",
    "CleanupReport",
    "MigrationConfirm",
    "ReconcileReport",
    "ReconciliationDriver",
]
