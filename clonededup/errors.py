"""Exception hierarchy for per-file and run-level failures."""
from __future__ import annotations

from typing import Optional


class ClonededupError(Exception):
    """Base class for every error raised by clonededup."""


class EnumerationError(ClonededupError):
    """An entry vanished or could not be stat-ed while walking a root."""


class HashError(ClonededupError):
    """A candidate file could not be opened, read or digested."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path


class CloneError(ClonededupError):
    """The filesystem refused to create a copy-on-write clone."""


class DataLossRiskError(CloneError):
    """The duplicate path is gone after a failed swap.

    ``temp_path`` names the surviving clone so an operator can move it back.
    """

    def __init__(self, path: str, temp_path: Optional[str], message: str) -> None:
        super().__init__(message)
        self.path = path
        self.temp_path = temp_path


class MetadataError(ClonededupError):
    """Capturing or restoring file attributes failed."""


class UnsupportedPlatformError(ClonededupError):
    """No copy-on-write clone primitive is available on this host."""


class MissingDependencyError(ClonededupError, RuntimeError):
    """An optional package needed by the configured run is not installed."""
