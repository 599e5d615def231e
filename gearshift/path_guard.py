"""Path and input validation, applied before anything touches disk."""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, TypeVar

import structlog

from gearshift.config import Settings
from gearshift.errors import InvalidParameter, InvalidPath
from gearshift.models import ClarificationsStrategy, ImplementationScope, Route

logger = structlog.get_logger()

E = TypeVar("E", bound=Enum)

MAX_CLARIFICATIONS = 100
MAX_CLARIFICATION_LENGTH = 5000
MAX_PATH_LENGTH = 4096

_SHELL_METACHARACTERS = re.compile(r"[;&|`$(){}\[\]<>\\!]")
# "..", with any of its dots percent-encoded (once or twice)
_TRAVERSAL = re.compile(r"(?:\.|%2e|%252e)(?:\.|%2e|%252e)", re.IGNORECASE)
_SEPARATORS = re.compile(r"/|%2f|%252f|%5c|%255c", re.IGNORECASE)


def _has_traversal(raw: str) -> bool:
    """True if any path segment of the raw input is a (possibly encoded) '..'."""
    return any(_TRAVERSAL.fullmatch(segment) for segment in _SEPARATORS.split(raw))


class PathGuard:
    """Validates directories against a set of allowed roots."""

    def __init__(self, allowed_roots: Iterable[str | Path] | None = None) -> None:
        roots = list(allowed_roots or [])
        if not roots:
            roots = [Path.cwd()]
        self._roots = [Path(root).resolve() for root in roots]

    @classmethod
    def from_settings(cls, settings: Settings) -> PathGuard:
        return cls(settings.allowed_roots)

    @property
    def allowed_roots(self) -> list[Path]:
        return list(self._roots)

    def validate_directory(self, candidate: str | Path) -> Path:
        """Resolve a directory and make sure it stays inside an allowed root.

        Args:
            candidate: Raw directory path as supplied by the caller.

        Returns:
            The absolute, symlink-resolved path.

        Raises:
            InvalidPath: If the input is malformed, contains traversal
                sequences, or resolves outside every allowed root.
        """
        raw = str(candidate)
        self._check_raw(raw)

        resolved = Path(raw).resolve()
        if not any(resolved == root or root in resolved.parents for root in self._roots):
            logger.warning("path_outside_roots", path=raw, resolved=str(resolved))
            raise InvalidPath(
                raw,
                "outside allowed workspace (allowed: "
                + ", ".join(str(r) for r in self._roots)
                + ")",
            )
        return resolved

    def validate_file_path(self, directory: str | Path, filename: str) -> Path:
        """Resolve a file name inside an already allowed directory."""
        base = self.validate_directory(directory)
        self._check_raw(filename)

        resolved = (base / filename).resolve()
        if base not in resolved.parents:
            raise InvalidPath(filename, f"escapes directory {base}")
        return resolved

    @staticmethod
    def _check_raw(raw: str) -> None:
        if not raw or not raw.strip():
            raise InvalidPath(raw, "empty path")
        if len(raw) > MAX_PATH_LENGTH:
            raise InvalidPath(raw[:64] + "...", f"longer than {MAX_PATH_LENGTH} characters")
        if "\x00" in raw:
            raise InvalidPath(raw.replace("\x00", "\\0"), "contains null byte")
        if _SHELL_METACHARACTERS.search(raw):
            raise InvalidPath(raw, "contains shell metacharacters")
        if _has_traversal(raw):
            logger.warning("path_traversal_rejected", path=raw)
            raise InvalidPath(raw, "contains directory traversal")


def validate_enum(value: Any, allowed: type[E], param_name: str) -> E:
    """Return the enum member for ``value`` or raise InvalidParameter."""
    if isinstance(value, allowed):
        return value
    if not isinstance(value, str):
        raise InvalidParameter(
            param_name, f"expected string, got {type(value).__name__}"
        )
    try:
        return allowed(value)
    except ValueError:
        choices = ", ".join(repr(member.value) for member in allowed)
        raise InvalidParameter(
            param_name, f"{value!r} is not one of {choices}"
        ) from None


def validate_bounded_text(value: Any, max_length: int, param_name: str) -> str:
    if not isinstance(value, str):
        raise InvalidParameter(param_name, f"expected string, got {type(value).__name__}")
    if len(value) > max_length:
        raise InvalidParameter(
            param_name, f"exceeds maximum length of {max_length} characters"
        )
    return value


def validate_bounded_list(
    values: Any,
    max_count: int,
    per_item_max_length: int,
    param_name: str,
) -> list[str]:
    """Bound a batch of free-text values by count and per-item length."""
    if not isinstance(values, (list, tuple)):
        raise InvalidParameter(param_name, f"expected list, got {type(values).__name__}")
    if len(values) > max_count:
        raise InvalidParameter(param_name, f"exceeds maximum of {max_count} items")

    errors = []
    for index, value in enumerate(values):
        if not isinstance(value, str):
            errors.append(f"[{index}]: expected string")
        elif len(value) > per_item_max_length:
            errors.append(
                f"[{index}]: exceeds maximum length of {per_item_max_length} characters"
            )
    if errors:
        raise InvalidParameter(param_name, errors)
    return list(values)


def validate_route(value: Any) -> Route | None:
    if value is None:
        return None
    return validate_enum(value, Route, "route")


def validate_clarifications_strategy(value: Any) -> ClarificationsStrategy:
    return validate_enum(value, ClarificationsStrategy, "clarifications_strategy")


def validate_implementation_scope(value: Any) -> ImplementationScope:
    return validate_enum(value, ImplementationScope, "implementation_scope")


def validate_clarifications(batch: Any) -> list[dict[str, str]]:
    """Validate a batch of ``{"question", "answer"}`` clarification pairs."""
    if not isinstance(batch, (list, tuple)):
        raise InvalidParameter("clarifications", f"expected list, got {type(batch).__name__}")
    if len(batch) > MAX_CLARIFICATIONS:
        raise InvalidParameter(
            "clarifications", f"exceeds maximum of {MAX_CLARIFICATIONS} items"
        )

    validated = []
    for index, entry in enumerate(batch):
        if not isinstance(entry, dict):
            raise InvalidParameter(f"clarifications[{index}]", "expected object")
        validated.append(
            {
                key: validate_bounded_text(
                    entry.get(key, ""),
                    MAX_CLARIFICATION_LENGTH,
                    f"clarifications[{index}].{key}",
                )
                for key in ("question", "answer")
            }
        )
    return validated
