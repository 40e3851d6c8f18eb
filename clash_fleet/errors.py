from __future__ import annotations

from pathlib import Path


class FleetError(Exception):
    """Base class for errors that stop a fleet from being generated."""


class ConfigError(FleetError):
    """Raised when the base Clash configuration is missing or invalid."""

    def __init__(self, path: Path | None, message: str) -> None:
        prefix = f"{path}: " if path is not None else ""
        super().__init__(f"{prefix}{message}")
        self.path = path


class EmptySelectionError(FleetError):
    """Raised when the proxy name prefix matches no proxy."""

    def __init__(self, prefix: str) -> None:
        super().__init__(f"No proxy name starts with {prefix!r}; nothing to launch.")
        self.prefix = prefix


class MaterializationError(FleetError):
    """Raised when an instance directory or config file cannot be written."""

    def __init__(self, directory: Path, message: str) -> None:
        super().__init__(f"Failed to materialize {directory}: {message}")
        self.directory = directory


class LifecycleError(FleetError):
    """Raised on an invalid lifecycle state transition."""
