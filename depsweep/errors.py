"""Exception taxonomy for depsweep.

Only ManifestError and RegistryLoadError stop a run. Everything else is
recovered where it happens and surfaced as a diagnostic on the report.
"""
from pathlib import Path
from typing import Optional


class DepsweepError(Exception):
    """Base exception for all depsweep errors."""


class ManifestError(DepsweepError):
    """Raised when package.json is missing, unreadable or malformed."""

    def __init__(self, message: str, path: Optional[str | Path] = None):
        self.path = str(path) if path is not None else None
        if self.path:
            message = f"{message} ({self.path})"
        super().__init__(message)


class RegistryLoadError(DepsweepError):
    """Raised when a rule registry cannot be loaded.

    Protection guarantees depend on the registry, so this is fatal.
    """


class ParsePartialFailure(DepsweepError):
    """A single source buffer could not be parsed.

    The file still counts as scanned; it contributes a parse-failure marker
    instead of references.
    """

    def __init__(self, reason: str, line: Optional[int] = None):
        self.reason = reason
        self.line = line
        super().__init__(f"line {line}: {reason}" if line else reason)


class ConfigParseError(DepsweepError):
    """A configuration file is malformed and contributes no evidence."""

    def __init__(self, file_path: str, reason: str):
        self.file_path = file_path
        self.reason = reason
        super().__init__(f"{file_path}: {reason}")
