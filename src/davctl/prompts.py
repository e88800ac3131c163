"""Interactive questions asked by ``davctl setup``, ``fresh``, ``reset`` and ``raid``."""
from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TypeVar

import typer
from rich.console import Console

from .config import AppConfig
from .models import (
    DesiredState,
    DesiredStateError,
    MigrationIntent,
    RoutingSettings,
    StorageLocation,
    User,
    normalize_root,
    validate_body_size,
)
from .raid.planner import PlannerStep

T = TypeVar("T")


def _ask_until_valid(
    console: Console,
    question: str,
    default: str,
    convert: Callable[[str], T],
) -> T:
    """Prompt until *convert* accepts the answer."""
    while True:
        answer = typer.prompt(question, default=default or None, show_default=True)
        try:
            return convert(str(answer).strip())
        except (DesiredStateError, ValueError) as exc:
            console.print(f"[yellow]{exc}[/yellow]")


def _parse_port(value: str) -> int:
    port = int(value)
    if not 0 < port <= 65535:
        raise ValueError("Port must be between 1 and 65535.")
    return port


def _parse_gzip_level(value: str) -> int:
    if len(value) != 1 or value not in "123456789":
        raise ValueError("Please enter a number between 1 and 9.")
    return int(value)


def _parse_yes_no(value: str) -> bool:
    lowered = value.lower()
    if lowered in {"y", "yes"}:
        return True
    if lowered in {"n", "no"}:
        return False
    raise ValueError("Please answer y or n.")


def _parse_users(value: str) -> tuple[str, ...]:
    names = tuple(part for part in value.replace(",", " ").split() if part)
    for name in names:
        User(name)
    return names


def _ask_locations(console: Console, config: AppConfig) -> list[StorageLocation]:
    defaults = list(config.locations)
    locations: list[StorageLocation] = []
    index = 0
    while True:
        default = defaults[index] if index < len(defaults) else None
        root = _ask_until_valid(
            console,
            "Enter the WebDAV root directory",
            str(default.root) if default else "",
            normalize_root,
        )
        used_ports = {location.port for location in locations}
        suggested = default.port if default else max(used_ports, default=8079) + 1
        port = _ask_until_valid(
            console,
            f"Enter the port for {root} to listen on",
            str(suggested),
            _parse_port,
        )
        if root in {location.root for location in locations} or port in used_ports:
            console.print("[yellow]That root or port is already in use; try again.[/yellow]")
            continue
        locations.append(StorageLocation(root, port))
        index += 1
        more_default = "y" if index < len(defaults) else "n"
        add_more = _ask_until_valid(
            console, "Add another storage location? (y/n)", more_default, _parse_yes_no
        )
        if not add_more:
            return locations


def collect_settings(
    config: AppConfig,
    console: Console,
) -> tuple[DesiredState, RoutingSettings]:
    """Ask for every setting, offering the configured values as defaults."""
    console.print("[bold]Interactive configuration[/bold]")
    console.print("Provide your settings or press Enter to accept the defaults.")

    locations = _ask_locations(console, config)
    admin_user = _ask_until_valid(
        console,
        "Enter the admin username",
        config.admin_user,
        lambda value: User(value).name,
    )
    users = _ask_until_valid(
        console,
        "Enter the WebDAV accounts (space separated)",
        " ".join(config.users),
        _parse_users,
    )
    credential_file = _ask_until_valid(
        console,
        "Enter the full path for the password file",
        str(config.credential_file),
        _absolute_path,
    )
    max_body_size = _ask_until_valid(
        console,
        "Enter the maximum file upload size (e.g., 100M, 2G)",
        config.webdav.max_body_size,
        validate_body_size,
    )
    gzip_level = _ask_until_valid(
        console,
        "Enter Gzip compression level (1-9)",
        str(config.webdav.gzip_level),
        _parse_gzip_level,
    )
    autoindex = _ask_until_valid(
        console,
        "Enable directory listing in browser? (y/n)",
        "y" if config.webdav.autoindex else "n",
        _parse_yes_no,
    )
    default_password = typer.prompt(
        "Enter the default password for NEWLY created users",
        default=config.default_password,
        hide_input=True,
        show_default=False,
    )

    state = DesiredState(
        locations=tuple(locations),
        users=tuple(User(name) for name in users),
        admin_user=admin_user,
        default_password=default_password,
    )
    settings = RoutingSettings(
        credential_file=credential_file,
        admin_user=state.admin_user,
        log_dir=config.nginx.log_dir,
        error_log_name=config.nginx.error_log_name,
        max_body_size=max_body_size,
        gzip_level=gzip_level,
        gzip_types=config.webdav.gzip_types,
        autoindex=autoindex,
        realm=config.webdav.realm,
    )
    console.print("[green]Configuration received.[/green]")
    return state, settings


def _absolute_path(value: str) -> Path:
    if not value.startswith("/"):
        raise ValueError(f"'{value}' must be an absolute path.")
    return Path(value)


def confirm_migration(console: Console) -> Callable[[MigrationIntent], bool]:
    """Return a callback asking whether to move data for one intent."""

    def ask(intent: MigrationIntent) -> bool:
        console.print("[bold yellow]The WebDAV root directory has changed.[/bold yellow]")
        console.print(f"Old location: {intent.old_root}")
        console.print(f"New location: {intent.new_root}")
        answer = typer.prompt(
            "Do you want to move all data from the old to the new location? (y/N)",
            default="",
            show_default=False,
        )
        return is_yes(answer)

    return ask


def is_yes(answer: str) -> bool:
    """Accept ``y`` or ``Y`` only."""
    return answer.strip() in {"y", "Y"}


def confirm_cleanup(console: Console, roots: Sequence[Path]) -> bool:
    """Warn about the cleanup and ask for a ``y``/``Y`` answer."""
    console.print(
        "[bold yellow]This operation will remove nginx and its configuration.[/bold yellow]"
    )
    for root in roots:
        console.print(f"User data in '{root}' will NOT be touched.")
    answer = typer.prompt(
        "Are you sure you want to proceed with the cleanup? (y/N)",
        default="",
        show_default=False,
    )
    return is_yes(answer)


class ConsoleRaidPrompter:
    """RAID session prompts rendered on a rich console."""

    def __init__(self, console: Console) -> None:
        """Bind the prompter to *console*."""
        self.console = console

    def show(self, step: PlannerStep) -> None:
        if step.error:
            self.console.print(f"[red]{step.error}[/red]")
        elif step.message:
            self.console.print(step.message)

    def choose_disk(self, menu: Sequence[str], selected: Sequence[str]) -> str:
        self.console.print("[bold]Available disks:[/bold]")
        for index, label in enumerate(menu, start=1):
            self.console.print(f"  {index}) {label}")
        if selected:
            self.console.print(f"Selected so far: {' '.join(selected)}")
        return str(typer.prompt("Select a disk by number or path (or 'done' to finish)"))

    def choose_level(self, menu: Sequence[str]) -> str:
        self.console.print("[bold]Please choose a RAID level.[/bold]")
        for label in menu:
            self.console.print(f"  {label}")
        return str(typer.prompt("RAID level (0, 1 or 5)"))

    def confirm_destruction(self, disks: Sequence[str]) -> str:
        self.console.print(f"[bold yellow]Array members: {' '.join(disks)}[/bold yellow]")
        self.console.print("[bold red]ALL DATA ON THESE DISKS WILL BE ERASED.[/bold red]")
        answer = typer.prompt("Type 'YES' in all caps to proceed", default="", show_default=False)
        return str(answer)

    def ask_mountpoint(self) -> str:
        self.console.print("Where should the new RAID array be mounted? (e.g., /srv/raid)")
        try:
            return str(typer.prompt("Mount point"))
        except typer.Abort as exc:
            raise EOFError("Mount point prompt aborted.") from exc


__all__ = [
    "ConsoleRaidPrompter",
    "collect_settings",
    "confirm_cleanup",
    "confirm_migration",
    "is_yes",
]
