"""Provider interfaces for davctl."""
from __future__ import annotations

from .nginx import NginxError, NginxProvider, NginxRenderResult
from .packages import PackageError, PackageProvider
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "NginxError",
    "NginxProvider",
    "NginxRenderResult",
    "PackageError",
    "PackageProvider",
    "SystemdError",
    "SystemdProvider",
]
