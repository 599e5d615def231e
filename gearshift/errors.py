"""Error taxonomy for gearshift."""

from __future__ import annotations

from pathlib import Path


class GearshiftError(Exception):
    """Base class for all gearshift errors."""


class InvalidPath(GearshiftError):
    """Raised when a directory or file path fails validation."""

    def __init__(self, candidate: str, reason: str) -> None:
        self.candidate = candidate
        self.reason = reason
        super().__init__(f"Invalid path {candidate!r}: {reason}")


class InvalidParameter(GearshiftError):
    """Raised when a bounded input or enumerated value is rejected."""

    def __init__(self, param: str, reasons: list[str] | str) -> None:
        self.param = param
        self.reasons = [reasons] if isinstance(reasons, str) else list(reasons)
        super().__init__(f"Invalid parameter {param}: {'; '.join(self.reasons)}")


class StateNotFound(GearshiftError):
    """Raised when no workflow state document exists yet."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"No workflow state at {path}")


class StateCorrupted(GearshiftError):
    """Raised when the state document is unreadable and no backup could be restored."""

    def __init__(
        self,
        path: Path,
        quarantine_path: Path | None,
        reasons: list[str] | None = None,
    ) -> None:
        self.path = path
        self.quarantine_path = quarantine_path
        self.reasons = list(reasons or [])
        message = f"Workflow state at {path} is corrupted"
        if self.reasons:
            message += f" ({'; '.join(self.reasons)})"
        if quarantine_path is not None:
            message += f"; moved to {quarantine_path}"
        super().__init__(message)


class StateTooLarge(StateCorrupted):
    """Raised when the state document exceeds the size ceiling."""

    def __init__(
        self,
        path: Path,
        size: int,
        limit: int,
        quarantine_path: Path | None = None,
    ) -> None:
        self.size = size
        self.limit = limit
        super().__init__(
            path,
            quarantine_path,
            [f"document is {size} bytes, limit is {limit}"],
        )


class UnsupportedSchemaVersion(GearshiftError):
    """Raised when the state document was written by a newer schema."""

    def __init__(self, path: Path, found: int, supported: int) -> None:
        self.path = path
        self.found = found
        self.supported = supported
        super().__init__(
            f"Workflow state at {path} has schema version {found}; "
            f"this version of gearshift supports up to {supported}"
        )


class InvalidTransition(GearshiftError):
    """Raised when an update would break a workflow rule."""

    def __init__(self, reasons: list[str] | str) -> None:
        self.reasons = [reasons] if isinstance(reasons, str) else list(reasons)
        super().__init__("Invalid workflow transition: " + "; ".join(self.reasons))


class ConcurrentModification(GearshiftError):
    """Raised when an update was based on a stale revision."""

    def __init__(self, path: Path, expected: int, actual: int) -> None:
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Workflow state at {path} is at revision {actual}, expected {expected}"
        )


class CycleDetected(GearshiftError):
    """Raised by callers that treat a dependency cycle as fatal."""

    def __init__(self, cycles: list[list[str]]) -> None:
        self.cycles = cycles
        rendered = ", ".join(" -> ".join(cycle) for cycle in cycles)
        super().__init__(f"Circular dependencies: {rendered}")


class ConfigurationError(GearshiftError):
    """Raised when scoring configuration is inconsistent."""
