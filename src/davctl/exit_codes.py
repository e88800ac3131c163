"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    ``OK`` also covers operations the operator declined on purpose.
    """

    OK = 0
    VALIDATION = 1
    ENVIRONMENT = 3
    PROVIDER = 4
