"""Tests for the reconciliation driver."""
from __future__ import annotations

from pathlib import Path

import pytest

from davctl.credentials import CredentialReconciler, CredentialStore
from davctl.driver import CleanupError, ReconciliationDriver
from davctl.logging import StructuredLogger
from davctl.models import DesiredState, MigrationIntent, RoutingSettings
from davctl.providers import (
    NginxError,
    NginxProvider,
    PackageProvider,
    SystemdError,
    SystemdProvider,
)
from davctl.provisioning import LocationProvisioner
from davctl.templates import TemplateEngine

from conftest import FakeExecutor


class Host:
    """Temporary filesystem layout standing in for a server."""

    def __init__(self, tmp_path: Path, executor: FakeExecutor) -> None:
        """Create the nginx tree and a driver bound to it."""
        self.tmp_path = tmp_path
        self.executor = executor
        self.nginx_dir = tmp_path / "etc" / "nginx"
        self.state_dir = tmp_path / "var" / "lib" / "nginx"
        self.credential_file = self.nginx_dir / "webdav.passwd"
        (self.nginx_dir / "sites-available").mkdir(parents=True)
        (self.nginx_dir / "sites-enabled").mkdir(parents=True)
        (self.nginx_dir / "nginx.conf").write_text("worker_processes 1;\n", encoding="utf-8")
        self.state_dir.mkdir(parents=True)
        self.nginx = NginxProvider(
            templates=TemplateEngine.with_overrides(None),
            executor=executor,
            sites_available=self.nginx_dir / "sites-available",
            sites_enabled=self.nginx_dir / "sites-enabled",
            conf_d=self.nginx_dir / "conf.d",
            main_config=self.nginx_dir / "nginx.conf",
        )
        self.driver = ReconciliationDriver(
            nginx=self.nginx,
            systemd=SystemdProvider(executor=executor),
            packages=PackageProvider(executor=executor),
            provisioner=LocationProvisioner(executor=executor),
            credentials=CredentialReconciler(CredentialStore(self.credential_file, executor)),
            managed_trees=(self.nginx_dir, self.state_dir),
        )

    def state(self, *locations: tuple[Path, int]) -> DesiredState:
        return DesiredState.build(
            locations,
            ("alice", "bob"),
            admin_user="admin",
            default_password="changeme",
        )

    def settings(self) -> RoutingSettings:
        return RoutingSettings(
            credential_file=self.credential_file,
            admin_user="admin",
            log_dir=self.tmp_path / "log",
        )


@pytest.fixture
def host(tmp_path: Path, executor: FakeExecutor) -> Host:
    """Return a fresh temporary host."""
    return Host(tmp_path, executor)


def _never(intent: MigrationIntent) -> bool:
    raise AssertionError(f"unexpected migration prompt for {intent.old_root}")


def test_reconcile_orders_steps(host: Host, executor: FakeExecutor) -> None:
    """Storage and credentials exist before routing; validation precedes restart."""
    root = host.tmp_path / "srv" / "webdav"

    report = host.driver.reconcile(
        host.state((root, 8080)),
        host.settings(),
        confirm_migration=_never,
        install_packages=True,
    )

    assert executor.programs() == [
        "apt-get",
        "apt-get",
        "chown",
        "chmod",
        "htpasswd",
        "htpasswd",
        "htpasswd",
        "nginx",
        "systemctl",
    ]
    assert executor.commands[-2:] == [["nginx", "-t"], ["systemctl", "restart", "nginx"]]
    assert report.packages == ["nginx-full", "apache2-utils"]
    assert report.performance_changed is True
    assert report.workers_tuned is True
    assert report.credentials.added == ["alice", "bob", "admin"]
    assert report.restarted is True
    assert report.changes > 0
    assert (root / "alice").is_dir()
    assert host.nginx.enabled_path(root).is_symlink()


def test_second_reconcile_changes_nothing(host: Host, executor: FakeExecutor) -> None:
    """Re-running with the same state only re-validates and restarts."""
    root = host.tmp_path / "srv"
    state = host.state((root, 8080))
    host.driver.reconcile(state, host.settings(), confirm_migration=_never)
    executor.commands.clear()

    report = host.driver.reconcile(state, host.settings(), confirm_migration=_never)

    assert report.changes == 0
    assert report.routing.changed is False
    assert sorted(report.credentials.existing) == ["admin", "alice", "bob"]
    assert "htpasswd" not in executor.programs()


def test_failed_validation_prevents_restart(host: Host, executor: FakeExecutor) -> None:
    """A broken configuration is never loaded by the running service."""
    executor.fail("nginx", "-t", stderr="emerg: invalid")

    with pytest.raises(NginxError):
        host.driver.reconcile(
            host.state((host.tmp_path / "srv", 8080)),
            host.settings(),
            confirm_migration=_never,
        )

    assert "systemctl" not in executor.programs()
    assert host.nginx.list_units() == []


def test_failed_validation_restores_previous_units(host: Host, executor: FakeExecutor) -> None:
    """Rejected units are replaced by the set that was there before."""
    old = host.tmp_path / "old"
    new = host.tmp_path / "new"
    host.driver.reconcile(host.state((old, 8080)), host.settings(), confirm_migration=_never)
    before = host.nginx.unit_path(old).read_text(encoding="utf-8")
    executor.fail("nginx", "-t", stderr="emerg: invalid")

    with pytest.raises(NginxError):
        host.driver.reconcile(
            host.state((old, 8080), (new, 8081)),
            host.settings(),
            confirm_migration=_never,
        )

    assert host.nginx.list_units() == [host.nginx.unit_path(old)]
    assert host.nginx.unit_path(old).read_text(encoding="utf-8") == before
    link = host.nginx.enabled_path(old)
    assert link.is_symlink()
    assert link.resolve() == host.nginx.unit_path(old).resolve()
    assert not host.nginx.enabled_path(new).is_symlink()


def test_restart_failure_propagates(host: Host, executor: FakeExecutor) -> None:
    """A failing restart is reported to the caller."""
    executor.fail("systemctl", "restart")

    with pytest.raises(SystemdError):
        host.driver.reconcile(
            host.state((host.tmp_path / "srv", 8080)),
            host.settings(),
            confirm_migration=_never,
        )


def test_root_change_migrates_when_confirmed(host: Host, executor: FakeExecutor) -> None:
    """A confirmed root change moves data before provisioning the new root."""
    old = host.tmp_path / "old"
    new = host.tmp_path / "new"
    old.mkdir()
    host.driver.reconcile(host.state((old, 8080)), host.settings(), confirm_migration=_never)
    executor.commands.clear()
    asked: list[MigrationIntent] = []

    def accept(intent: MigrationIntent) -> bool:
        asked.append(intent)
        return True

    report = host.driver.reconcile(
        host.state((new, 8080)), host.settings(), confirm_migration=accept
    )

    assert asked == [MigrationIntent(old_root=old, new_root=new, port=8080)]
    assert executor.programs()[0] == "rsync"
    assert [result.intent for result in report.provision.migrated] == asked
    assert not host.nginx.unit_path(old).exists()
    assert host.nginx.unit_path(new).exists()


def test_root_change_declined_keeps_data(host: Host, executor: FakeExecutor) -> None:
    """Declining leaves the old tree alone and still routes the new root."""
    old = host.tmp_path / "old"
    new = host.tmp_path / "new"
    old.mkdir()
    host.driver.reconcile(host.state((old, 8080)), host.settings(), confirm_migration=_never)

    report = host.driver.reconcile(
        host.state((new, 8080)),
        host.settings(),
        confirm_migration=lambda intent: False,
    )

    assert "rsync" not in executor.programs()
    assert report.provision.skipped_migrations[0].old_root == old
    assert (old / "alice").is_dir()
    assert host.nginx.unit_path(new).exists()


def test_steps_are_recorded(host: Host, tmp_path: Path) -> None:
    """Each reconcile step lands in the operation log."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("setup") as op:
        host.driver.reconcile(
            host.state((host.tmp_path / "srv", 8080)),
            host.settings(),
            confirm_migration=_never,
            op=op,
        )
        names = [step["name"] for step in op.steps]

    assert names == [
        "nginx.performance",
        "storage.provision",
        "credentials.reconcile",
        "nginx.units",
        "nginx.validate",
        "service.restart",
    ]


def test_cleanup_is_best_effort(host: Host, executor: FakeExecutor) -> None:
    """Stop and purge failures become warnings; trees are still removed."""
    root = host.tmp_path / "srv"
    host.driver.reconcile(host.state((root, 8080)), host.settings(), confirm_migration=_never)
    executor.fail("systemctl", "stop", returncode=5)
    executor.fail("apt-get", "remove", returncode=100)

    report = host.driver.cleanup(host.credential_file)

    assert report.stopped is False
    assert report.purged is False
    assert len(report.warnings) == 2
    assert report.removed == [host.nginx_dir, host.state_dir]
    assert not host.nginx_dir.exists()
    assert not host.state_dir.exists()
    assert (root / "alice").is_dir()


def test_cleanup_removes_credential_file_outside_trees(host: Host) -> None:
    """A password file kept elsewhere is removed explicitly."""
    elsewhere = host.tmp_path / "secrets" / "webdav.passwd"
    elsewhere.parent.mkdir()
    elsewhere.write_text("alice:x\n", encoding="utf-8")

    report = host.driver.cleanup(elsewhere)

    assert report.stopped is True
    assert report.purged is True
    assert elsewhere in report.removed
    assert not elsewhere.exists()


def test_cleanup_removal_failure_raises(
    host: Host,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A managed tree that cannot be removed aborts the cleanup."""

    def refuse(path: Path) -> None:
        raise PermissionError("busy")

    monkeypatch.setattr("davctl.driver.shutil.rmtree", refuse)

    with pytest.raises(CleanupError, match="busy"):
        host.driver.cleanup(host.credential_file)
