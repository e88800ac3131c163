"""Nginx provider: one generated routing unit per storage location."""
from __future__ import annotations

import re
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..executor import CommandError, SystemExecutor
from ..models import RoutingSettings, StorageLocation
from ..templates import TemplateEngine, write_if_changed

UNIT_PREFIX = "davctl-"
UNIT_SUFFIX = ".conf"
DAV_METHODS: tuple[str, ...] = ("PUT", "DELETE", "MKCOL", "COPY", "MOVE")
DAV_EXT_METHODS: tuple[str, ...] = ("PROPFIND", "OPTIONS")
DAV_ACCESS = "user:rw group:r all:r"

_USER_ROOT_PATTERN = re.compile(r"^\s*set\s+\$user_root\s+([^;]+);", re.MULTILINE)
_LISTEN_PATTERN = re.compile(r"^\s*listen\s+(?:[^;\s]*:)?(\d+)", re.MULTILINE)
_WORKER_PATTERN = re.compile(r"^(\s*)worker_processes\s+[^;]*;", re.MULTILINE)


class NginxError(RuntimeError):
    """Raised when nginx operations fail."""


def encode_root(root: Path | str) -> str:
    """Return an injective, filename-safe encoding of *root*.

    ASCII letters and digits are kept; every other byte of the UTF-8 path,
    including ``_`` itself, becomes ``_`` followed by two hex digits.
    """
    encoded: list[str] = []
    for byte in str(root).encode("utf-8"):
        char = chr(byte)
        if char.isascii() and char.isalnum():
            encoded.append(char)
        else:
            encoded.append(f"_{byte:02x}")
    return "".join(encoded)


def decode_root(encoded: str) -> Path:
    """Invert :func:`encode_root`."""
    data = bytearray()
    index = 0
    while index < len(encoded):
        char = encoded[index]
        if char == "_":
            data.append(int(encoded[index + 1 : index + 3], 16))
            index += 3
        else:
            data.extend(char.encode("ascii"))
            index += 1
    return Path(data.decode("utf-8"))


@dataclass(slots=True)
class PreviousUnit:
    """Routing details recovered from an already generated unit."""

    path: Path
    root: Path | None
    port: int | None


@dataclass(slots=True)
class NginxRenderResult:
    """Outcome of regenerating the full set of routing units."""

    written: list[Path] = field(default_factory=list)
    unchanged: list[Path] = field(default_factory=list)
    retired: list[Path] = field(default_factory=list)
    previous: dict[Path, tuple[str, int]] = field(default_factory=dict)
    previous_links: dict[str, Path] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        """Return True when any unit was added, rewritten or retired."""
        return bool(self.written) or bool(set(self.retired) - set(self.unchanged))


@dataclass(slots=True)
class NginxProvider:
    """Render and manage the WebDAV routing units consumed by nginx."""

    templates: TemplateEngine
    executor: SystemExecutor
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    conf_d: Path = Path("/etc/nginx/conf.d")
    main_config: Path = Path("/etc/nginx/nginx.conf")
    nginx_bin: str = "nginx"
    legacy_names: tuple[str, ...] = ("webdav",)

    def unit_name(self, location: StorageLocation | Path) -> str:
        """Return the deterministic unit file name for a location root."""
        root = location.root if isinstance(location, StorageLocation) else Path(location)
        return f"{UNIT_PREFIX}{encode_root(root)}{UNIT_SUFFIX}"

    def unit_path(self, location: StorageLocation | Path) -> Path:
        """Return the path of the generated unit in sites-available."""
        return self.sites_available / self.unit_name(location)

    def enabled_path(self, location: StorageLocation | Path) -> Path:
        """Return the path of the sites-enabled symlink."""
        return self.sites_enabled / self.unit_name(location)

    def build_context(
        self,
        location: StorageLocation,
        settings: RoutingSettings,
    ) -> dict[str, object]:
        """Return the template context for *location*."""
        return {
            "root": str(location.root),
            "port": location.port,
            "access_log": str(settings.log_dir / settings.access_log_name(location)),
            "error_log": str(settings.log_dir / settings.error_log_name),
            "gzip_level": settings.gzip_level,
            "gzip_types": list(settings.gzip_types),
            "admin_user": settings.admin_user,
            "max_body_size": settings.max_body_size,
            "realm": settings.realm,
            "credential_file": str(settings.credential_file),
            "autoindex": settings.autoindex,
            "dav_methods": list(DAV_METHODS),
            "dav_ext_methods": list(DAV_EXT_METHODS),
            "dav_access": DAV_ACCESS,
        }

    def generate(self, location: StorageLocation, settings: RoutingSettings) -> str:
        """Render the unit text for *location*; identical inputs give identical text."""
        return self.templates.render_to_string(
            "nginx/webdav.conf.j2",
            self.build_context(location, settings),
        )

    def list_units(self) -> list[Path]:
        """Return generated units (and legacy units) currently in sites-available."""
        if not self.sites_available.is_dir():
            return []
        units = [
            path
            for path in self.sites_available.iterdir()
            if path.name.startswith(UNIT_PREFIX) and path.name.endswith(UNIT_SUFFIX)
        ]
        units.extend(
            self.sites_available / name
            for name in self.legacy_names
            if (self.sites_available / name).is_file()
        )
        return sorted(units)

    def previous_units(self) -> list[PreviousUnit]:
        """Parse previously generated units for their root and listen port."""
        previous: list[PreviousUnit] = []
        for path in self.list_units():
            try:
                text = path.read_text(encoding="utf-8")
            except OSError:
                continue
            root = _parse_root(text)
            if root is None and path.name.startswith(UNIT_PREFIX):
                try:
                    root = decode_root(path.name[len(UNIT_PREFIX) : -len(UNIT_SUFFIX)])
                except ValueError:
                    root = None
            previous.append(PreviousUnit(path=path, root=root, port=_parse_port(text)))
        return previous

    def retire_units(self) -> list[Path]:
        """Remove every generated unit and its symlink; return removed unit paths."""
        retired: list[Path] = []
        if self.sites_enabled.is_dir():
            for link in self.sites_enabled.iterdir():
                if self._is_managed_name(link.name):
                    link.unlink(missing_ok=True)
        for path in self.list_units():
            path.unlink(missing_ok=True)
            retired.append(path)
        return retired

    def write_units(
        self,
        locations: Sequence[StorageLocation],
        settings: RoutingSettings,
    ) -> NginxRenderResult:
        """Replace the full set of units with one per *locations* entry.

        The replaced units are kept on the result so :meth:`rollback` can
        restore them when validation rejects the new set.
        """
        rendered = {
            self.unit_path(location): self.generate(location, settings)
            for location in locations
        }
        result = NginxRenderResult()
        try:
            for path in self.list_units():
                result.previous[path] = (
                    path.read_text(encoding="utf-8"),
                    path.stat().st_mode & 0o777,
                )
            result.previous_links = self._managed_links()
            result.retired = self.retire_units()
            for location in locations:
                path = self.unit_path(location)
                content = rendered[path]
                write_if_changed(path, content, mode=0o644)
                previous = result.previous.get(path)
                if previous is not None and previous[0] == content:
                    result.unchanged.append(path)
                else:
                    result.written.append(path)
                self.enable(location)
        except OSError as exc:
            raise NginxError(f"Failed to write routing units: {exc}") from exc
        return result

    def rollback(self, result: NginxRenderResult) -> None:
        """Put back the units and links that *result* replaced."""
        try:
            self.retire_units()
            for path, (content, mode) in result.previous.items():
                write_if_changed(path, content, mode=mode)
            for name, target in result.previous_links.items():
                link = self.sites_enabled / name
                link.parent.mkdir(parents=True, exist_ok=True)
                link.unlink(missing_ok=True)
                link.symlink_to(target)
        except OSError as exc:
            raise NginxError(f"Failed to restore previous routing units: {exc}") from exc

    def enable(self, location: StorageLocation) -> None:
        """Enable the unit by creating a symlink in sites-enabled."""
        source = self.unit_path(location)
        target = self.enabled_path(location)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists() or target.is_symlink():
            try:
                if target.resolve() == source.resolve():
                    return
            except FileNotFoundError:
                # Broken symlink; replace it with a fresh one.
                pass
            target.unlink()
        target.symlink_to(source)

    def render_performance(self, context: Mapping[str, object] | None = None) -> bool:
        """Write the global open-file-cache snippet into conf.d."""
        values: dict[str, object] = {
            "open_file_cache_max": 2000,
            "open_file_cache_inactive": "30s",
            "open_file_cache_valid": "60s",
            "open_file_cache_min_uses": 2,
        }
        values.update(context or {})
        try:
            return self.templates.render_to_path(
                "nginx/performance.conf.j2",
                self.conf_d / "00-performance.conf",
                values,
                mode=0o644,
            )
        except OSError as exc:
            raise NginxError(f"Failed to write performance settings: {exc}") from exc

    def tune_worker_processes(self) -> bool:
        """Set ``worker_processes auto;`` in nginx.conf; return True when edited."""
        if not self.main_config.is_file():
            return False
        try:
            text = self.main_config.read_text(encoding="utf-8")
            updated = _WORKER_PATTERN.sub(r"\1worker_processes auto;", text)
            if updated == text:
                return False
            mode = self.main_config.stat().st_mode & 0o777
            return write_if_changed(self.main_config, updated, mode=mode)
        except OSError as exc:
            raise NginxError(f"Failed to update {self.main_config}: {exc}") from exc

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` to validate the active configuration."""
        try:
            return self.executor.run([self.nginx_bin, "-t"])
        except CommandError as exc:
            raise NginxError(str(exc)) from exc

    # ------------------------------------------------------------------
    def _managed_links(self) -> dict[str, Path]:
        if not self.sites_enabled.is_dir():
            return {}
        return {
            link.name: link.readlink()
            for link in self.sites_enabled.iterdir()
            if link.is_symlink() and self._is_managed_name(link.name)
        }

    def _is_managed_name(self, name: str) -> bool:
        if name.startswith(UNIT_PREFIX) and name.endswith(UNIT_SUFFIX):
            return True
        return name in self.legacy_names


def _parse_root(text: str) -> Path | None:
    match = _USER_ROOT_PATTERN.search(text)
    if match is None:
        return None
    value = match.group(1).strip().strip("\"'").rstrip("/")
    if not value:
        return None
    return Path(value)


def _parse_port(text: str) -> int | None:
    match = _LISTEN_PATTERN.search(text)
    return int(match.group(1)) if match else None


__all__ = [
    "DAV_ACCESS",
    "DAV_EXT_METHODS",
    "DAV_METHODS",
    "NginxError",
    "NginxProvider",
    "NginxRenderResult",
    "PreviousUnit",
    "decode_root",
    "encode_root",
]
