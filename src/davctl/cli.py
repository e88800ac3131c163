"""Typer-powered command line interface for ``davctl``.

``davctl`` with no subcommand behaves like ``davctl setup``: it asks for the
deployment settings and reconciles the host. Every command runs inside a
structured operation scope; mutating commands also hold the host-wide lock.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .credentials import (
    CredentialError,
    CredentialReconciler,
    CredentialStore,
    CredentialStoreError,
    CredentialStoreMissingError,
)
from .driver import (
    CleanupError,
    CleanupReport,
    MigrationConfirm,
    ReconcileReport,
    ReconciliationDriver,
)
from .executor import CommandError, SubprocessExecutor, SystemExecutor
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .models import DesiredState, DesiredStateError, MigrationIntent, RoutingSettings, User
from .prompts import ConsoleRaidPrompter, collect_settings, confirm_cleanup, confirm_migration
from .providers import (
    NginxError,
    NginxProvider,
    PackageError,
    PackageProvider,
    SystemdError,
    SystemdProvider,
)
from .provisioning import LocationProvisioner, ProvisioningError
from .raid import (
    DiskInventory,
    PlannerState,
    RaidCommitter,
    RaidSession,
    StorageArrayPlanner,
)
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to davctl's YAML config file.",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Accept the configured settings without prompting.",
)

MIGRATE_OPTION = typer.Option(
    False,
    "--migrate",
    help="Move data from a previously configured root without asking.",
)

SKIP_PACKAGES_OPTION = typer.Option(
    False,
    "--skip-packages",
    help="Do not install packages with apt-get.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

PASSWORD_OPTION = typer.Option(
    None,
    "--password",
    help="Password for the account (prompted when omitted).",
)

_PROVIDER_ERRORS: tuple[type[Exception], ...] = (
    CommandError,
    CredentialStoreError,
    NginxError,
    SystemdError,
    PackageError,
    ProvisioningError,
    CleanupError,
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        WebDAV provisioning CLI.

        Configures nginx to serve one or more storage locations over WebDAV,
        keeps per-user directories and basic-auth credentials in sync, and
        can assemble a software RAID array to host the data.
        """
    ).strip(),
)
users_app = typer.Typer(help="Manage WebDAV accounts in the password file.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(users_app, name="users")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    executor: SystemExecutor
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    nginx_provider: NginxProvider
    systemd_provider: SystemdProvider
    package_provider: PackageProvider
    provisioner: LocationProvisioner

    def credential_store(self, path: Path | None = None) -> CredentialStore:
        """Return the password file wrapper for *path* (default: configured file)."""
        return CredentialStore(
            path or self.config.credential_file,
            self.executor,
            htpasswd_bin=self.config.htpasswd_bin,
        )

    def driver(self, credential_file: Path | None = None) -> ReconciliationDriver:
        """Return a driver writing credentials to *credential_file*."""
        packages = self.config.packages
        return ReconciliationDriver(
            nginx=self.nginx_provider,
            systemd=self.systemd_provider,
            packages=self.package_provider,
            provisioner=self.provisioner,
            credentials=CredentialReconciler(self.credential_store(credential_file)),
            webdav_packages=packages.webdav,
            purge_patterns=packages.purge,
            managed_trees=(self.config.nginx.config_dir, self.config.nginx.state_dir),
        )


def _build_executor() -> SystemExecutor:
    return SubprocessExecutor()


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    config = load_config(config_file=config_file, overrides=overrides)
    executor = _build_executor()
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    nginx_config = config.nginx
    nginx_provider = NginxProvider(
        templates=templates,
        executor=executor,
        sites_available=nginx_config.sites_available,
        sites_enabled=nginx_config.sites_enabled,
        conf_d=nginx_config.conf_d,
        main_config=nginx_config.main_config,
        nginx_bin=nginx_config.nginx_bin,
    )
    systemd_provider = SystemdProvider(
        executor=executor,
        service=config.systemd.service,
        systemctl_bin=config.systemd.systemctl_bin,
    )
    package_provider = PackageProvider(executor=executor, apt_get_bin=config.packages.apt_get_bin)
    provisioner = LocationProvisioner(
        executor=executor,
        owner=config.service_user,
        group=config.service_group,
    )
    runtime = RuntimeContext(
        config=config,
        executor=executor,
        locks=locks,
        logger=logger,
        templates=templates,
        nginx_provider=nginx_provider,
        systemd_provider=systemd_provider,
        package_provider=package_provider,
        provisioner=provisioner,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the davctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"davctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    try:
        _ensure_runtime(ctx, config_file, lock_timeout)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc

    if ctx.invoked_subcommand is None:
        _run_reconcile(ctx, "setup", yes=False, migrate=False, skip_packages=False, fresh=False)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _provider_error(op: OperationScope, message: str) -> NoReturn:
    _command_error(op, message, rc=ExitCode.PROVIDER)


def _print_warnings(warnings: Sequence[str]) -> None:
    for warning in warnings:
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")


# ---------------------------------------------------------------------------
# setup / fresh / reset
# ---------------------------------------------------------------------------


def _resolve_settings(
    runtime: RuntimeContext,
    op: OperationScope,
    *,
    interactive: bool,
) -> tuple[DesiredState, RoutingSettings]:
    try:
        if interactive:
            return collect_settings(runtime.config, console)
        return runtime.config.desired_state(), runtime.config.routing_settings()
    except (ConfigError, DesiredStateError) as exc:
        _command_error(op, f"Invalid desired state: {exc}", rc=ExitCode.VALIDATION)


def _migration_callback(*, yes: bool, migrate: bool) -> MigrationConfirm:
    if migrate:
        return lambda intent: True
    if yes:
        return _decline_migration
    return confirm_migration(console)


def _decline_migration(intent: MigrationIntent) -> bool:
    console.print(
        f"[yellow]Leaving data in {intent.old_root}; pass --migrate to move it "
        f"to {intent.new_root}.[/yellow]"
    )
    return False


def _render_reconcile_report(
    runtime: RuntimeContext,
    state: DesiredState,
    report: ReconcileReport,
) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Root", style="bold")
    table.add_column("Port")
    table.add_column("Routing unit")
    for location in state.locations:
        table.add_row(
            str(location.root),
            str(location.port),
            runtime.nginx_provider.unit_name(location),
        )
    console.print(table)

    for result in report.provision.migrated:
        console.print(
            f"Migrated {result.intent.old_root} -> {result.intent.new_root}"
            + ("" if result.source_removed else " (old directory kept)")
        )
    if report.credentials.added:
        console.print(f"Added accounts: {', '.join(report.credentials.added)}")
    for name, preview in report.credentials.existing.items():
        console.print(f"Account '{name}' already present ({preview}).")
    _print_warnings(report.warnings)
    console.print("[green]WebDAV server is active and configured.[/green]")
    for location in state.locations:
        console.print(f"Access: http://<host>:{location.port}")


def _render_cleanup_report(report: CleanupReport) -> None:
    for path in report.removed:
        console.print(f"Removed {path}")
    _print_warnings(report.warnings)


def _run_reconcile(
    ctx: typer.Context,
    command: str,
    *,
    yes: bool,
    migrate: bool,
    skip_packages: bool,
    fresh: bool,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        command,
        args={"yes": yes, "migrate": migrate, "skip_packages": skip_packages},
        target={"kind": "webdav", "scope": "host"},
    ) as op:
        state, settings = _resolve_settings(runtime, op, interactive=not yes)
        if fresh and not yes and not confirm_cleanup(console, sorted(state.roots)):
            console.print("Operation cancelled by user.")
            op.success("Cleanup declined by operator.", changed=0)
            raise typer.Exit(code=ExitCode.OK)

        driver = runtime.driver(settings.credential_file)
        try:
            with runtime.locks.global_lock():
                if fresh:
                    _render_cleanup_report(driver.cleanup(settings.credential_file, op=op))
                report = driver.reconcile(
                    state,
                    settings,
                    confirm_migration=_migration_callback(yes=yes, migrate=migrate),
                    install_packages=not skip_packages,
                    op=op,
                )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except _PROVIDER_ERRORS as exc:
            _provider_error(op, f"{command} failed: {exc}")

        _render_reconcile_report(runtime, state, report)
        context = {
            "locations": [
                {"root": str(location.root), "port": location.port}
                for location in state.locations
            ],
            "added_users": report.credentials.added,
        }
        if report.warnings:
            op.warning(
                "Reconciled with warnings.",
                warnings=report.warnings,
                changed=report.changes,
                context=context,
            )
        else:
            op.success("Reconciled WebDAV deployment.", changed=report.changes, context=context)


@app.command()
def setup(
    ctx: typer.Context,
    yes: bool = YES_OPTION,
    migrate: bool = MIGRATE_OPTION,
    skip_packages: bool = SKIP_PACKAGES_OPTION,
) -> None:
    """Configure and reconcile the WebDAV deployment."""
    _run_reconcile(
        ctx,
        "setup",
        yes=yes,
        migrate=migrate,
        skip_packages=skip_packages,
        fresh=False,
    )


@app.command()
def fresh(
    ctx: typer.Context,
    yes: bool = YES_OPTION,
    migrate: bool = MIGRATE_OPTION,
    skip_packages: bool = SKIP_PACKAGES_OPTION,
) -> None:
    """Remove nginx and its configuration, then set everything up again."""
    _run_reconcile(
        ctx,
        "fresh",
        yes=yes,
        migrate=migrate,
        skip_packages=skip_packages,
        fresh=True,
    )


@app.command()
def reset(ctx: typer.Context, yes: bool = YES_OPTION) -> None:
    """Remove nginx, its configuration and the password file. Data is kept."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "reset",
        args={"yes": yes},
        target={"kind": "webdav", "scope": "host"},
    ) as op:
        roots = sorted(location.root for location in config.locations)
        if not yes and not confirm_cleanup(console, roots):
            console.print("Operation cancelled by user.")
            op.success("Cleanup declined by operator.", changed=0)
            raise typer.Exit(code=ExitCode.OK)

        driver = runtime.driver()
        try:
            with runtime.locks.global_lock():
                report = driver.cleanup(config.credential_file, op=op)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except CleanupError as exc:
            _provider_error(op, str(exc))

        _render_cleanup_report(report)
        console.print("[green]Cleanup complete.[/green]")
        if report.warnings:
            op.warning(
                "Cleanup completed with warnings.",
                warnings=report.warnings,
                changed=len(report.removed),
            )
        else:
            op.success("Cleanup complete.", changed=len(report.removed))


# ---------------------------------------------------------------------------
# raid
# ---------------------------------------------------------------------------


@app.command()
def raid(
    ctx: typer.Context,
    skip_packages: bool = SKIP_PACKAGES_OPTION,
) -> None:
    """Assemble a software RAID array from spare disks. Destroys their data."""
    runtime = _get_runtime(ctx)
    raid_config = runtime.config.raid
    with runtime.logger.operation(
        "raid",
        args={"skip_packages": skip_packages},
        target={"kind": "raid", "device": str(raid_config.device)},
    ) as op:
        console.print(
            "[bold yellow]This utility will DESTROY ALL DATA on the selected disks.[/bold yellow]"
        )
        session = RaidSession(
            planner=StorageArrayPlanner(device=raid_config.device, fstype=raid_config.fstype),
            inventory=DiskInventory(runtime.executor),
            committer=RaidCommitter(
                runtime.executor,
                fstab=raid_config.fstab,
                mdadm_conf=raid_config.mdadm_conf,
                settle_seconds=raid_config.settle_seconds,
            ),
            prompter=ConsoleRaidPrompter(console),
            packages=None if skip_packages else runtime.package_provider,
            required_packages=runtime.config.packages.raid,
        )
        try:
            with runtime.locks.global_lock():
                outcome = session.run()
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except (PackageError, CommandError) as exc:
            _provider_error(op, f"RAID preparation failed: {exc}")

        for step in outcome.steps:
            op.add_step(
                f"raid.{step.state.value}",
                status="error" if step.error else "success",
                detail=step.error or step.message,
            )

        if outcome.error is not None:
            console.print("[bold red]RAID creation stopped part-way; clean up manually.[/bold red]")
            console.print(f"Completed steps: {', '.join(outcome.error.completed) or 'none'}")
            console.print(f"Failed step: {outcome.error.failed_step}")
            _command_error(
                op,
                str(outcome.error),
                rc=outcome.exit_code,
                errors=[str(outcome.error), f"completed={','.join(outcome.error.completed)}"],
            )
        if outcome.state is PlannerState.FAILED:
            _command_error(op, "RAID setup aborted.", rc=outcome.exit_code)
        if outcome.state is PlannerState.CANCELLED:
            op.success("RAID creation cancelled by operator.", changed=0)
            return

        result = outcome.result
        if result is None:
            _command_error(op, "RAID session ended without a result.", rc=ExitCode.PROVIDER)
        console.print(f"[green]RAID array created and mounted at {result.mountpoint}.[/green]")
        console.print(
            "Use this path as a storage root with 'davctl setup' to serve it over WebDAV."
        )
        op.success(
            "RAID array created.",
            changed=1,
            context={
                "device": str(raid_config.device),
                "level": result.plan.level,
                "disks": result.plan.disk_paths,
                "mountpoint": str(result.mountpoint),
                "uuid": result.uuid,
            },
        )


# ---------------------------------------------------------------------------
# users
# ---------------------------------------------------------------------------


def _validated_user(op: OperationScope, name: str) -> str:
    try:
        return User(name).name
    except DesiredStateError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)


@users_app.command("list")
def users_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List accounts in the password file."""
    runtime = _get_runtime(ctx)
    store = runtime.credential_store()
    with runtime.logger.operation(
        "users list",
        args={"json": json_output},
        target={"kind": "credentials", "path": str(store.path)},
    ) as op:
        try:
            names = store.list_users()
        except CredentialStoreMissingError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except CredentialStoreError as exc:
            _provider_error(op, str(exc))

        if json_output:
            console.print_json(data={"users": names})
            op.success("Reported accounts as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("User", style="bold")
        table.add_column("Role")
        if not names:
            table.add_row("(none)", "")
        for name in names:
            table.add_row(name, "admin" if name == runtime.config.admin_user else "user")
        console.print(table)
        op.success("Reported accounts.", changed=0)


def _set_password(ctx: typer.Context, command: str, user: str, password: str | None) -> None:
    runtime = _get_runtime(ctx)
    store = runtime.credential_store()
    with runtime.logger.operation(
        f"users {command}",
        args={"user": user},
        target={"kind": "credentials", "path": str(store.path)},
    ) as op:
        name = _validated_user(op, user)
        try:
            store.require_store()
        except CredentialStoreMissingError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        secret = password or typer.prompt(
            f"New password for '{name}'",
            hide_input=True,
            confirmation_prompt=True,
        )
        try:
            with runtime.locks.global_lock():
                is_new = store.set_password(name, secret)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except CredentialStoreMissingError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except (CommandError, CredentialStoreError) as exc:
            _provider_error(op, str(exc))

        verb = "added" if is_new else "updated"
        console.print(f"[green]User '{name}' was {verb} successfully.[/green]")
        op.success(f"User {verb}.", changed=1, context={"user": name, "new": is_new})


@users_app.command("add")
def users_add(
    ctx: typer.Context,
    user: str = typer.Argument(..., help="Account name."),
    password: str | None = PASSWORD_OPTION,
) -> None:
    """Add an account, or change its password when it already exists."""
    _set_password(ctx, "add", user, password)


@users_app.command("passwd")
def users_passwd(
    ctx: typer.Context,
    user: str = typer.Argument(..., help="Account name."),
    password: str | None = PASSWORD_OPTION,
) -> None:
    """Change an account's password."""
    _set_password(ctx, "passwd", user, password)


@users_app.command("del")
def users_del(
    ctx: typer.Context,
    user: str = typer.Argument(..., help="Account name."),
) -> None:
    """Delete an account from the password file."""
    runtime = _get_runtime(ctx)
    store = runtime.credential_store()
    with runtime.logger.operation(
        "users del",
        args={"user": user},
        target={"kind": "credentials", "path": str(store.path)},
    ) as op:
        name = _validated_user(op, user)
        try:
            with runtime.locks.global_lock():
                store.delete_user(name)
        except (LockTimeoutError, CredentialStoreMissingError) as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except CredentialError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except (CommandError, CredentialStoreError) as exc:
            _provider_error(op, str(exc))

        console.print(f"[green]User '{name}' was deleted successfully.[/green]")
        op.success("User deleted.", changed=1, context={"user": name})


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, (dict, list)):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
