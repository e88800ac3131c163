"""Immutable desired-state value objects shared by the reconciliation engine."""
from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

DEFAULT_GZIP_TYPES: tuple[str, ...] = (
    "text/plain",
    "text/css",
    "text/xml",
    "application/json",
    "application/javascript",
    "application/xml",
    "image/svg+xml",
)

_BODY_SIZE_PATTERN = re.compile(r"^[0-9]+[kKmMgG]?$")
_INVALID_USER_CHARS = re.compile(r"[:/\s\"';${}]")
_UNSAFE_ROOT_CHARS = re.compile(r"[\s\"';${}]")


class DesiredStateError(RuntimeError):
    """Raised when desired-state values violate their invariants."""


def validate_body_size(value: str) -> str:
    """Return *value* when it is an nginx size such as ``100M`` or ``2G``."""
    text = str(value).strip()
    if not _BODY_SIZE_PATTERN.match(text):
        raise DesiredStateError(f"Maximum upload size '{text}' must look like 100M or 2G.")
    return text


def normalize_root(value: str | Path) -> Path:
    """Return *value* as an absolute path without a trailing slash."""
    text = str(value).strip()
    if not text:
        raise DesiredStateError("Storage root must be a non-empty path.")
    if not text.startswith("/"):
        raise DesiredStateError(f"Storage root '{text}' must be an absolute path.")
    stripped = text.rstrip("/")
    if not stripped:
        raise DesiredStateError("The filesystem root cannot be used as a storage root.")
    if _UNSAFE_ROOT_CHARS.search(stripped):
        raise DesiredStateError(
            f"Storage root '{stripped}' contains characters nginx cannot route to."
        )
    return Path(stripped)


def normalize_mountpoint(value: str | Path) -> Path:
    """Return *value* as an absolute mountpoint usable as an fstab field."""
    text = str(value).strip().rstrip("/")
    if not text.startswith("/"):
        raise DesiredStateError("Mount point must be an absolute path other than /.")
    if re.search(r"\s", text):
        raise DesiredStateError(f"Mount point '{text}' must not contain whitespace.")
    return Path(text)


@dataclass(frozen=True, slots=True)
class StorageLocation:
    """One provisioned root directory and the port it is served on."""

    root: Path
    port: int

    def __post_init__(self) -> None:
        """Validate and normalise the location."""
        object.__setattr__(self, "root", normalize_root(self.root))
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise DesiredStateError(f"Port for {self.root} must be an integer.")
        if not 0 < self.port <= 65535:
            raise DesiredStateError(f"Port {self.port} for {self.root} is out of range.")

    def user_root(self, user: User | str) -> Path:
        """Return the subtree that *user* is routed to below this root."""
        name = user.name if isinstance(user, User) else user
        return self.root / name


@dataclass(frozen=True, slots=True)
class User:
    """A WebDAV account name."""

    name: str

    def __post_init__(self) -> None:
        """Reject names that cannot be used as directory or htpasswd keys."""
        name = self.name.strip() if isinstance(self.name, str) else ""
        if not name:
            raise DesiredStateError("User names must be non-empty strings.")
        if _INVALID_USER_CHARS.search(name) or name.startswith((".", "#")):
            raise DesiredStateError(f"User name '{name}' contains forbidden characters.")
        object.__setattr__(self, "name", name)


@dataclass(frozen=True, slots=True)
class DesiredState:
    """Declared locations, accounts and credential policy for one reconcile pass."""

    locations: tuple[StorageLocation, ...]
    users: tuple[User, ...]
    admin_user: str
    default_password: str

    def __post_init__(self) -> None:
        """Enforce uniqueness and make sure the admin account is present."""
        if not self.locations:
            raise DesiredStateError("At least one storage location is required.")
        ports: set[int] = set()
        roots: set[Path] = set()
        for location in self.locations:
            if location.port in ports:
                raise DesiredStateError(f"Port {location.port} is configured more than once.")
            if location.root in roots:
                raise DesiredStateError(f"Root {location.root} is configured more than once.")
            ports.add(location.port)
            roots.add(location.root)

        admin = User(self.admin_user)
        users: list[User] = []
        seen: set[str] = set()
        for user in self.users:
            if user.name in seen:
                continue
            seen.add(user.name)
            users.append(user)
        if admin.name not in seen:
            users.append(admin)
        object.__setattr__(self, "admin_user", admin.name)
        object.__setattr__(self, "users", tuple(users))
        if not self.default_password:
            raise DesiredStateError("A default password for new users is required.")

    @classmethod
    def build(
        cls,
        locations: Iterable[tuple[str | Path, int]],
        users: Iterable[str],
        *,
        admin_user: str,
        default_password: str,
    ) -> DesiredState:
        """Construct a desired state from plain values."""
        return cls(
            locations=tuple(StorageLocation(Path(root), port) for root, port in locations),
            users=tuple(User(name) for name in users),
            admin_user=admin_user,
            default_password=default_password,
        )

    def is_admin(self, user: User | str) -> bool:
        """Return True when *user* is the distinguished admin account."""
        name = user.name if isinstance(user, User) else user
        return name == self.admin_user

    @property
    def ordinary_users(self) -> tuple[User, ...]:
        """Users that are routed to a per-user subtree."""
        return tuple(user for user in self.users if not self.is_admin(user))

    @property
    def roots(self) -> frozenset[Path]:
        """All desired storage roots."""
        return frozenset(location.root for location in self.locations)


@dataclass(frozen=True, slots=True)
class RoutingSettings:
    """Global settings rendered into every routing unit."""

    credential_file: Path
    admin_user: str
    log_dir: Path = Path("/var/log/nginx")
    error_log_name: str = "webdav_error.log"
    max_body_size: str = "100M"
    gzip_level: int = 6
    gzip_types: tuple[str, ...] = DEFAULT_GZIP_TYPES
    autoindex: bool = True
    realm: str = "WebDAV Restricted Area"

    def __post_init__(self) -> None:
        """Validate compression and body-size settings."""
        if isinstance(self.gzip_level, bool) or not 1 <= int(self.gzip_level) <= 9:
            raise DesiredStateError("Gzip compression level must be between 1 and 9.")
        object.__setattr__(self, "max_body_size", validate_body_size(self.max_body_size))
        if '"' in self.realm:
            raise DesiredStateError("Authentication realm must not contain double quotes.")

    def access_log_name(self, location: StorageLocation) -> str:
        """Return the per-location access log file name."""
        return f"webdav_{location.port}_access.log"


@dataclass(frozen=True, slots=True)
class MigrationIntent:
    """A detected move of an existing deployment root to a new root."""

    old_root: Path
    new_root: Path
    port: int | None = None


@dataclass(frozen=True, slots=True)
class DiskCandidate:
    """A whole disk eligible for inclusion in a RAID array."""

    path: str
    size: str = ""

    @property
    def label(self) -> str:
        """Human-readable menu label."""
        return f"{self.path} ({self.size})" if self.size else self.path


RAID_LEVELS: tuple[int, ...] = (0, 1, 5)
RAID_MIN_DISKS: dict[int, int] = {0: 2, 1: 2, 5: 3}


@dataclass(frozen=True, slots=True)
class RaidPlan:
    """A validated description of an array to be created."""

    level: int
    disks: tuple[DiskCandidate, ...]
    device: Path = Path("/dev/md0")
    fstype: str = "ext4"
    mountpoint: Path | None = None

    def validate(self) -> None:
        """Raise :class:`DesiredStateError` when the plan breaks level constraints."""
        if self.level not in RAID_LEVELS:
            raise DesiredStateError(f"Unsupported RAID level {self.level}.")
        paths = [disk.path for disk in self.disks]
        if len(set(paths)) != len(paths):
            raise DesiredStateError("A disk was selected more than once.")
        minimum = RAID_MIN_DISKS[self.level]
        if len(self.disks) < minimum:
            raise DesiredStateError(
                f"RAID {self.level} requires at least {minimum} disks; "
                f"{len(self.disks)} selected."
            )
        if self.mountpoint is not None:
            normalize_mountpoint(self.mountpoint)

    @property
    def disk_paths(self) -> list[str]:
        """Selected device paths in selection order."""
        return [disk.path for disk in self.disks]


__all__ = [
    "DEFAULT_GZIP_TYPES",
    "DesiredState",
    "DesiredStateError",
    "DiskCandidate",
    "MigrationIntent",
    "RAID_LEVELS",
    "RAID_MIN_DISKS",
    "RaidPlan",
    "RoutingSettings",
    "StorageLocation",
    "User",
    "normalize_mountpoint",
    "normalize_root",
    "validate_body_size",
]
