"""Configuration loader for davctl.

Configuration values are merged from, in increasing precedence:

1. Built-in defaults (mirroring a single-location Raspberry Pi deployment).
2. ``/etc/davctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``DAVCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export DAVCTL_WEBDAV__GZIP_LEVEL=4
    export DAVCTL_USERS="[alice, bob, admin]"
    export DAVCTL_LOCATIONS="[{root: /srv/raid, port: 8081}]"

Values are coerced via PyYAML's ``safe_load`` so that booleans, numbers and
flow-style lists are parsed naturally. The result is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load davctl configuration. Install with "
        "`pip install davctl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .models import (
    DEFAULT_GZIP_TYPES,
    DesiredState,
    DesiredStateError,
    RoutingSettings,
    StorageLocation,
)

ENV_PREFIX = "DAVCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class WebdavConfig:
    """Request-handling policy rendered into every routing unit."""

    max_body_size: str = "100M"
    gzip_level: int = 6
    gzip_types: tuple[str, ...] = DEFAULT_GZIP_TYPES
    autoindex: bool = True
    realm: str = "WebDAV Restricted Area"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "max_body_size": self.max_body_size,
            "gzip_level": self.gzip_level,
            "gzip_types": list(self.gzip_types),
            "autoindex": self.autoindex,
            "realm": self.realm,
        }


@dataclass(frozen=True)
class NginxConfig:
    """Locations of nginx configuration, logs and binaries."""

    config_dir: Path = Path("/etc/nginx")
    state_dir: Path = Path("/var/lib/nginx")
    log_dir: Path = Path("/var/log/nginx")
    error_log_name: str = "webdav_error.log"
    nginx_bin: str = "nginx"

    @property
    def sites_available(self) -> Path:
        """Directory holding generated routing units."""
        return self.config_dir / "sites-available"

    @property
    def sites_enabled(self) -> Path:
        """Directory holding symlinks to enabled routing units."""
        return self.config_dir / "sites-enabled"

    @property
    def conf_d(self) -> Path:
        """Directory for global http-level snippets."""
        return self.config_dir / "conf.d"

    @property
    def main_config(self) -> Path:
        """Path to ``nginx.conf``."""
        return self.config_dir / "nginx.conf"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "config_dir": str(self.config_dir),
            "state_dir": str(self.state_dir),
            "log_dir": str(self.log_dir),
            "error_log_name": self.error_log_name,
            "nginx_bin": self.nginx_bin,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Service manager integration values."""

    systemctl_bin: str = "systemctl"
    service: str = "nginx"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"systemctl_bin": self.systemctl_bin, "service": self.service}


@dataclass(frozen=True)
class PackagesConfig:
    """Package manager integration values."""

    apt_get_bin: str = "apt-get"
    webdav: tuple[str, ...] = ("nginx-full", "apache2-utils")
    raid: tuple[str, ...] = ("mdadm",)
    purge: tuple[str, ...] = ("nginx*",)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "apt_get_bin": self.apt_get_bin,
            "webdav": list(self.webdav),
            "raid": list(self.raid),
            "purge": list(self.purge),
        }


@dataclass(frozen=True)
class RaidConfig:
    """Defaults for array creation."""

    device: Path = Path("/dev/md0")
    fstype: str = "ext4"
    fstab: Path = Path("/etc/fstab")
    mdadm_conf: Path = Path("/etc/mdadm/mdadm.conf")
    settle_seconds: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "device": str(self.device),
            "fstype": self.fstype,
            "fstab": str(self.fstab),
            "mdadm_conf": str(self.mdadm_conf),
            "settle_seconds": self.settle_seconds,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for davctl."""

    config_file: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    service_user: str
    service_group: str
    admin_user: str
    users: tuple[str, ...]
    locations: tuple[StorageLocation, ...]
    credential_file: Path
    default_password: str
    htpasswd_bin: str
    webdav: WebdavConfig
    nginx: NginxConfig
    systemd: SystemdConfig
    packages: PackagesConfig
    raid: RaidConfig

    def desired_state(self) -> DesiredState:
        """Return the desired state described by this configuration."""
        try:
            return DesiredState.build(
                [(location.root, location.port) for location in self.locations],
                self.users,
                admin_user=self.admin_user,
                default_password=self.default_password,
            )
        except DesiredStateError as exc:
            raise ConfigError(str(exc)) from exc

    def routing_settings(self) -> RoutingSettings:
        """Return routing settings shared by every generated unit."""
        try:
            return RoutingSettings(
                credential_file=self.credential_file,
                admin_user=self.admin_user,
                log_dir=self.nginx.log_dir,
                error_log_name=self.nginx.error_log_name,
                max_body_size=self.webdav.max_body_size,
                gzip_level=self.webdav.gzip_level,
                gzip_types=self.webdav.gzip_types,
                autoindex=self.webdav.autoindex,
                realm=self.webdav.realm,
            )
        except DesiredStateError as exc:
            raise ConfigError(str(exc)) from exc

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "service_user": self.service_user,
            "service_group": self.service_group,
            "admin_user": self.admin_user,
            "users": list(self.users),
            "locations": [
                {"root": str(location.root), "port": location.port}
                for location in self.locations
            ],
            "credential_file": str(self.credential_file),
            "default_password": "***",
            "htpasswd_bin": self.htpasswd_bin,
            "webdav": self.webdav.to_dict(),
            "nginx": self.nginx.to_dict(),
            "systemd": self.systemd.to_dict(),
            "packages": self.packages.to_dict(),
            "raid": self.raid.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/davctl/config.yml",
    "logs_dir": "/var/log/davctl",
    "runtime_dir": "/run/davctl",
    "templates_dir": "/etc/davctl/templates",
    "lock_timeout": 30.0,
    "service_user": "www-data",
    "service_group": "www-data",
    "admin_user": "admin",
    "users": ["user1", "user2", "admin"],
    "locations": [{"root": "/srv/webdav", "port": 8080}],
    "credential_file": "/etc/nginx/webdav.passwd",
    "default_password": "password",
    "htpasswd_bin": "htpasswd",
    "webdav": {
        "max_body_size": "100M",
        "gzip_level": 6,
        "gzip_types": list(DEFAULT_GZIP_TYPES),
        "autoindex": True,
        "realm": "WebDAV Restricted Area",
    },
    "nginx": {
        "config_dir": "/etc/nginx",
        "state_dir": "/var/lib/nginx",
        "log_dir": "/var/log/nginx",
        "error_log_name": "webdav_error.log",
        "nginx_bin": "nginx",
    },
    "systemd": {
        "systemctl_bin": "systemctl",
        "service": "nginx",
    },
    "packages": {
        "apt_get_bin": "apt-get",
        "webdav": ["nginx-full", "apache2-utils"],
        "raid": ["mdadm"],
        "purge": ["nginx*"],
    },
    "raid": {
        "device": "/dev/md0",
        "fstype": "ext4",
        "fstab": "/etc/fstab",
        "mdadm_conf": "/etc/mdadm/mdadm.conf",
        "settle_seconds": 10,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_NESTED_KEYS: dict[str, set[str]] = {
    "webdav": {"max_body_size", "gzip_level", "gzip_types", "autoindex", "realm"},
    "nginx": {"config_dir", "state_dir", "log_dir", "error_log_name", "nginx_bin"},
    "systemd": {"systemctl_bin", "service"},
    "packages": {"apt_get_bin", "webdav", "raid", "purge"},
    "raid": {"device", "fstype", "fstab", "mdadm_conf", "settle_seconds"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _NESTED_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    locations = _as_sequence(raw.get("locations", []), "locations")
    for index, entry in enumerate(locations):
        mapping = _as_dict(entry, f"locations[{index}]")
        unknown = set(mapping.keys()) - {"root", "port"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown keys for locations[{index}]: {joined}.")
        if "root" not in mapping or "port" not in mapping:
            raise ConfigError(f"locations[{index}] requires both 'root' and 'port'.")

    webdav = _as_dict(raw.get("webdav"), "webdav")
    level = webdav.get("gzip_level")
    if level is not None:
        parsed = _expect_int(level, "webdav.gzip_level", default=6)
        if not 1 <= parsed <= 9:
            raise ConfigError("webdav.gzip_level must be between 1 and 9.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    locations: list[StorageLocation] = []
    for index, entry in enumerate(_as_sequence(raw.get("locations", []), "locations")):
        mapping = _as_dict(entry, f"locations[{index}]")
        port = _expect_int(mapping.get("port"), f"locations[{index}].port", default=0)
        try:
            locations.append(StorageLocation(Path(str(mapping.get("root"))), port))
        except DesiredStateError as exc:
            raise ConfigError(f"locations[{index}]: {exc}") from exc

    users = tuple(
        str(item).strip() for item in _as_sequence(raw.get("users", []), "users")
    )

    webdav_mapping = _as_dict(raw.get("webdav"), "webdav")
    gzip_types_raw = webdav_mapping.get("gzip_types")
    gzip_types = (
        tuple(str(item) for item in _as_sequence(gzip_types_raw, "webdav.gzip_types"))
        if gzip_types_raw is not None
        else DEFAULT_GZIP_TYPES
    )
    webdav = WebdavConfig(
        max_body_size=str(webdav_mapping.get("max_body_size", "100M")),
        gzip_level=_expect_int(webdav_mapping.get("gzip_level"), "webdav.gzip_level", default=6),
        gzip_types=gzip_types,
        autoindex=_expect_bool(webdav_mapping.get("autoindex"), "webdav.autoindex", default=True),
        realm=str(webdav_mapping.get("realm", "WebDAV Restricted Area")),
    )

    nginx_mapping = _as_dict(raw.get("nginx"), "nginx")
    nginx = NginxConfig(
        config_dir=_to_path(nginx_mapping.get("config_dir", "/etc/nginx")),
        state_dir=_to_path(nginx_mapping.get("state_dir", "/var/lib/nginx")),
        log_dir=_to_path(nginx_mapping.get("log_dir", "/var/log/nginx")),
        error_log_name=str(nginx_mapping.get("error_log_name", "webdav_error.log")),
        nginx_bin=str(nginx_mapping.get("nginx_bin", "nginx")),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        service=str(systemd_mapping.get("service", "nginx")),
    )

    packages_mapping = _as_dict(raw.get("packages"), "packages")
    packages = PackagesConfig(
        apt_get_bin=str(packages_mapping.get("apt_get_bin", "apt-get")),
        webdav=_string_tuple(packages_mapping.get("webdav"), "packages.webdav"),
        raid=_string_tuple(packages_mapping.get("raid"), "packages.raid"),
        purge=_string_tuple(packages_mapping.get("purge"), "packages.purge"),
    )

    raid_mapping = _as_dict(raw.get("raid"), "raid")
    settle_raw = raid_mapping.get("settle_seconds", 10)
    settle_seconds = 0.0 if settle_raw in (0, "0") else _expect_positive_float(
        settle_raw, "raid.settle_seconds", default=10.0
    )
    raid = RaidConfig(
        device=_to_path(raid_mapping.get("device", "/dev/md0")),
        fstype=str(raid_mapping.get("fstype", "ext4")),
        fstab=_to_path(raid_mapping.get("fstab", "/etc/fstab")),
        mdadm_conf=_to_path(raid_mapping.get("mdadm_conf", "/etc/mdadm/mdadm.conf")),
        settle_seconds=settle_seconds,
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=lock_timeout,
        service_user=str(raw.get("service_user", "www-data")),
        service_group=str(raw.get("service_group", "www-data")),
        admin_user=str(raw.get("admin_user", "admin")),
        users=users,
        locations=tuple(locations),
        credential_file=_to_path(raw.get("credential_file")),
        default_password=str(raw.get("default_password", "password")),
        htpasswd_bin=str(raw.get("htpasswd_bin", "htpasswd")),
        webdav=webdav,
        nginx=nginx,
        systemd=systemd,
        packages=packages,
        raid=raid,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _string_tuple(value: object, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    return tuple(str(item) for item in _as_sequence(value, label))


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"on", "off"}:
        return value.strip().lower() == "on"
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "NginxConfig",
    "PackagesConfig",
    "RaidConfig",
    "SystemdConfig",
    "WebdavConfig",
    "load_config",
]
