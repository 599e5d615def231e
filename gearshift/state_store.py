"""Persistent workflow state with atomic updates, backups and recovery.

All reads and writes of the state document go through StateStore. Updates
follow a read-mutate-validate-write-rename cycle: the new document is written
to a temporary file in the same directory and moved over the canonical path
with ``os.replace``, so a reader never observes a half-written file. Before an
existing document is replaced it is copied to a timestamped backup; at most
``max_backups`` are kept.

Concurrent writers are not serialized. Each performs its own full cycle and
the last rename wins. Callers that need to detect lost updates pass
``expected_revision`` to ``update``.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from gearshift.config import Settings
from gearshift.errors import (
    ConcurrentModification,
    InvalidParameter,
    InvalidTransition,
    StateCorrupted,
    StateNotFound,
    StateTooLarge,
    UnsupportedSchemaVersion,
)
from gearshift.models import (
    GEAR_NAMES,
    GEARS,
    ROUTE_DESCRIPTIONS,
    SCHEMA_VERSION,
    VALID_TRANSITIONS,
    AutoConfig,
    ProjectMetadata,
    RoadmapEntry,
    Route,
    Stage,
    StageDetail,
    StageStatus,
    WorkflowState,
    utc_now,
    validation_messages,
)
from gearshift.path_guard import PathGuard

logger = structlog.get_logger()

Mutator = Callable[[WorkflowState], "WorkflowState | None"]

_LEGACY_STATUS = {"in_progress": "in-progress", "completed": "completed"}


def _file_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


def _migrate_legacy(data: Any) -> Any:
    """Upgrade a pre-schema-version document (camelCase keys) to schema version 1."""
    if not isinstance(data, dict) or "schema_version" in data:
        return data
    if "currentStep" not in data and "completedSteps" not in data:
        return data

    completed = data.get("completedSteps")
    current = data.get("currentStep")
    if current is None and isinstance(completed, list):
        current = Stage.DONE.value if len(completed) >= len(GEARS) else Stage.NONE.value

    details = {}
    for name, raw in (data.get("stepDetails") or {}).items():
        if not isinstance(raw, dict):
            continue
        extra = {
            k: v for k, v in raw.items() if k not in ("started", "completed", "status")
        }
        detail = {
            "status": _LEGACY_STATUS.get(raw.get("status"), StageStatus.IN_PROGRESS.value),
            "started_at": raw.get("started") or data.get("created"),
            "metadata": extra,
        }
        if raw.get("completed"):
            detail["completed_at"] = raw["completed"]
        details[name] = detail

    metadata = data.get("metadata") or {}
    migrated = {
        "schema_version": SCHEMA_VERSION,
        "created_at": data.get("created"),
        "updated_at": data.get("updated") or data.get("created"),
        "revision": 0,
        "current_stage": current,
        "completed_stages": completed,
        "route": data.get("path"),
        "auto_mode": bool(data.get("auto_mode", False)),
        "auto_config": data.get("auto_config"),
        "stage_details": details,
        "metadata": {
            "project_name": metadata.get("projectName"),
            "project_path": metadata.get("projectPath"),
        },
        "roadmap_items": [],
    }
    if metadata.get("pathDescription"):
        migrated["metadata"]["route_description"] = metadata["pathDescription"]
    logger.info("legacy_state_migrated", legacy_version=data.get("version"))
    return migrated


def _transition_errors(
    prior: WorkflowState, candidate: WorkflowState, allow_skip: bool
) -> list[str]:
    errors = []
    if candidate.completed_stages[: len(prior.completed_stages)] != prior.completed_stages:
        errors.append("completed_stages is append-only")
    elif not allow_skip and len(candidate.completed_stages) - len(prior.completed_stages) > 1:
        errors.append("stages cannot be skipped without an administrative override")
    if prior.route is not None and candidate.route != prior.route:
        errors.append(
            f"route is immutable once set (is {prior.route.value!r})"
        )
    if candidate.created_at != prior.created_at:
        errors.append("created_at cannot change")
    return errors


class StateStore:
    """Owns the single workflow-state document of a project directory."""

    def __init__(
        self,
        directory: str | Path,
        settings: Settings | None = None,
        guard: PathGuard | None = None,
    ) -> None:
        settings = settings or Settings()
        guard = guard or PathGuard.from_settings(settings)
        self._directory = guard.validate_directory(directory)
        self._path = self._directory / settings.state_file_name
        self._max_bytes = settings.max_state_bytes
        self._max_backups = settings.max_backups

    @property
    def path(self) -> Path:
        return self._path

    @property
    def directory(self) -> Path:
        return self._directory

    def exists(self) -> bool:
        return self._path.is_file()

    # --- reading ------------------------------------------------------------

    def load(self) -> WorkflowState:
        """Load the state document, recovering from a backup if it is damaged.

        Raises:
            StateNotFound: No document exists yet.
            StateCorrupted: The document is damaged and no backup validates.
            StateTooLarge: The document exceeds the size ceiling and no backup validates.
            UnsupportedSchemaVersion: The document was written by a newer schema.
        """
        try:
            return self._read_document(self._path)
        except StateCorrupted as exc:
            return self._recover(exc)

    def backups(self) -> list[Path]:
        """Return backup files, newest first."""
        pattern = f"{self._path.name}.bak.*"
        return sorted(self._directory.glob(pattern), key=lambda p: p.name, reverse=True)

    def progress(self) -> dict[str, Any]:
        """Summarize progress through the gears."""
        try:
            state = self.load()
        except StateNotFound:
            state = self._zero_state()

        gears = []
        for gear in GEARS:
            if gear in state.completed_stages:
                status = "complete"
            elif gear == state.current_stage:
                status = "in-progress"
            else:
                status = "pending"
            detail = state.stage_details.get(gear)
            gears.append(
                {
                    "stage": gear.value,
                    "name": GEAR_NAMES[gear],
                    "status": status,
                    "details": (
                        detail.model_dump(mode="json", exclude_none=True) if detail else None
                    ),
                }
            )

        completed = len(state.completed_stages)
        return {
            "route": state.route.value if state.route else None,
            "current_stage": state.current_stage.value,
            "completed": completed,
            "total": len(GEARS),
            "percentage": round(completed / len(GEARS) * 100),
            "gears": gears,
        }

    def _read_document(self, path: Path) -> WorkflowState:
        try:
            size = path.stat().st_size
            if size > self._max_bytes:
                raise StateTooLarge(path, size, self._max_bytes)
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise StateNotFound(path) from None
        except UnicodeDecodeError as e:
            raise StateCorrupted(path, None, [f"invalid UTF-8: {e.reason}"]) from e

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise StateCorrupted(
                path, None, [f"malformed JSON: {e.msg} (line {e.lineno})"]
            ) from e

        data = _migrate_legacy(data)
        version = data.get("schema_version") if isinstance(data, dict) else None
        if isinstance(version, int) and not isinstance(version, bool) and version > SCHEMA_VERSION:
            raise UnsupportedSchemaVersion(path, version, SCHEMA_VERSION)

        try:
            return WorkflowState.model_validate(data)
        except ValidationError as e:
            raise StateCorrupted(path, None, validation_messages(e)) from e

    def _recover(self, error: StateCorrupted) -> WorkflowState:
        quarantine = self._quarantine()
        log = logger.bind(path=str(self._path), quarantine=str(quarantine))
        log.error("state_corrupted", reasons=error.reasons)

        for backup in self.backups():
            try:
                state = self._read_document(backup)
            except (StateCorrupted, StateNotFound, UnsupportedSchemaVersion) as exc:
                log.warning("backup_rejected", backup=str(backup), error=str(exc))
                continue
            self._atomic_write(self._path, state.model_dump_json(indent=2))
            log.warning("state_restored_from_backup", backup=str(backup))
            return state

        if isinstance(error, StateTooLarge):
            raise StateTooLarge(self._path, error.size, error.limit, quarantine) from error
        raise StateCorrupted(self._path, quarantine, error.reasons) from error

    def _quarantine(self) -> Path | None:
        target = self._unique_sibling("corrupted")
        try:
            os.replace(self._path, target)
        except FileNotFoundError:
            return None
        return target

    # --- writing ------------------------------------------------------------

    def update(self, mutator: Mutator, expected_revision: int | None = None) -> WorkflowState:
        """Apply ``mutator`` to the current state and persist the result atomically.

        The mutator receives a private copy and may either return a new state or
        modify the copy in place and return None. A missing document is treated
        as the zero-value document.

        Args:
            mutator: Function transforming the current state.
            expected_revision: If given, the update is refused unless the stored
                revision still matches.

        Returns:
            The state as written.

        Raises:
            ConcurrentModification: ``expected_revision`` no longer matches.
            InvalidTransition: The result breaks a schema or workflow rule.
        """
        return self._update(mutator, expected_revision, allow_skip=False)

    def _update(
        self, mutator: Mutator, expected_revision: int | None, allow_skip: bool
    ) -> WorkflowState:
        try:
            prior = self.load()
            existed = True
        except StateNotFound:
            prior = self._zero_state()
            existed = False

        if expected_revision is not None and expected_revision != prior.revision:
            raise ConcurrentModification(self._path, expected_revision, prior.revision)

        working = prior.model_copy(deep=True)
        try:
            candidate = mutator(working)
        except ValidationError as e:
            raise InvalidTransition(validation_messages(e)) from e
        if candidate is None:
            candidate = working

        candidate.schema_version = SCHEMA_VERSION
        candidate.revision = prior.revision + 1
        candidate.updated_at = utc_now()

        # Assignments on the working copy are unchecked; the dump is re-validated
        try:
            data = candidate.model_dump(mode="json", warnings=False)
            content = json.dumps(data, indent=2, ensure_ascii=False)
        except (AttributeError, TypeError, ValueError) as e:
            raise InvalidTransition(f"state is not serializable: {e}") from e

        try:
            written = WorkflowState.model_validate(data)
        except ValidationError as e:
            errors = validation_messages(e)
        else:
            errors = _transition_errors(prior, written, allow_skip)
        if len(content.encode("utf-8")) > self._max_bytes:
            errors.append(f"document would exceed {self._max_bytes} bytes")
        if errors:
            raise InvalidTransition(errors)

        if existed:
            self._backup()
        self._atomic_write(self._path, content)

        logger.debug(
            "state_updated",
            path=str(self._path),
            revision=written.revision,
            current_stage=written.current_stage.value,
        )
        return written

    def _backup(self) -> None:
        target = self._unique_sibling("bak")
        fd, tmp_path = tempfile.mkstemp(
            dir=self._directory, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        os.close(fd)
        try:
            shutil.copy2(self._path, tmp_path)
            os.replace(tmp_path, target)
        except FileNotFoundError:
            # Another writer replaced the document between load and backup
            os.unlink(tmp_path)
            return
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

        for stale in self.backups()[self._max_backups :]:
            try:
                stale.unlink()
            except FileNotFoundError:
                pass
            logger.debug("backup_pruned", backup=str(stale))

    @staticmethod
    def _atomic_write(path: Path, content: str) -> None:
        fd, tmp_path = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _unique_sibling(self, kind: str) -> Path:
        base = self._path.with_name(f"{self._path.name}.{kind}.{_file_timestamp()}")
        candidate = base
        counter = 1
        while candidate.exists():
            candidate = base.with_name(f"{base.name}-{counter}")
            counter += 1
        return candidate

    def _zero_state(self) -> WorkflowState:
        return WorkflowState(
            metadata=ProjectMetadata(
                project_name=self._directory.name or str(self._directory),
                project_path=str(self._directory),
            )
        )

    # --- workflow operations ------------------------------------------------

    def initialize(
        self,
        route: Route | None = None,
        auto_config: AutoConfig | None = None,
    ) -> WorkflowState:
        """Create the document if needed and apply route and cruise settings."""

        def apply(state: WorkflowState) -> None:
            if route is not None:
                state.route = route
                state.metadata.route_description = ROUTE_DESCRIPTIONS[route]
            if auto_config is not None:
                state.auto_mode = True
                state.auto_config = auto_config

        state = self.update(apply)
        logger.info(
            "state_initialized",
            path=str(self._path),
            route=state.route.value if state.route else None,
            auto_mode=state.auto_mode,
        )
        return state

    def set_route(self, route: Route) -> WorkflowState:
        def apply(state: WorkflowState) -> None:
            state.route = route
            state.metadata.route_description = ROUTE_DESCRIPTIONS[route]

        return self.update(apply)

    def start_stage(self, stage: Stage) -> WorkflowState:
        """Mark ``stage`` in progress. It must be the next gear to run."""

        def apply(state: WorkflowState) -> None:
            expected = state.next_gear()
            if stage != expected:
                raise InvalidTransition(
                    f"cannot start {stage.value!r}; next gear is "
                    f"{expected.value if expected else 'none (pipeline done)'!r}"
                )
            previous = state.stage_details.get(stage)
            state.current_stage = stage
            state.stage_details[stage] = StageDetail(
                status=StageStatus.IN_PROGRESS,
                started_at=previous.started_at if previous else utc_now(),
                attempts=(previous.attempts if previous else 0) + 1,
                metadata=previous.metadata if previous else {},
            )

        return self.update(apply)

    def complete_stage(
        self, stage: Stage, metadata: dict[str, Any] | None = None
    ) -> WorkflowState:
        """Mark ``stage`` complete and advance to the next gear."""

        def apply(state: WorkflowState) -> None:
            if stage in state.completed_stages:
                raise InvalidTransition(f"stage {stage.value!r} is already complete")
            expected = state.next_gear()
            if stage != expected:
                raise InvalidTransition(
                    f"cannot complete {stage.value!r} before {expected.value if expected else 'none'!r}"
                )
            now = utc_now()
            previous = state.stage_details.get(stage)
            merged = dict(previous.metadata) if previous else {}
            merged.update(metadata or {})
            state.completed_stages.append(stage)
            state.current_stage = VALID_TRANSITIONS[stage]
            state.stage_details[stage] = StageDetail(
                status=StageStatus.COMPLETED,
                started_at=previous.started_at if previous else now,
                completed_at=now,
                attempts=max(previous.attempts if previous else 0, 1),
                metadata=merged,
            )

        state = self.update(apply)
        logger.info(
            "stage_completed",
            stage=stage.value,
            next_stage=state.current_stage.value,
            revision=state.revision,
        )
        return state

    def fail_stage(self, stage: Stage, error: str) -> WorkflowState:
        """Record a failed attempt; the gear stays current so it can be retried."""

        def apply(state: WorkflowState) -> None:
            if stage in state.completed_stages:
                raise InvalidTransition(f"stage {stage.value!r} is already complete")
            previous = state.stage_details.get(stage)
            state.stage_details[stage] = StageDetail(
                status=StageStatus.FAILED,
                started_at=previous.started_at if previous else utc_now(),
                attempts=previous.attempts if previous else 1,
                error=error[:2000],
                metadata=previous.metadata if previous else {},
            )

        return self.update(apply)

    def override_stage(self, target: Stage, reason: str) -> WorkflowState:
        """Administrative skip forward to ``target``.

        Every gear before ``target`` that is not yet complete is recorded as
        skipped and added to completed_stages, so the stage invariant holds.
        """
        if target == Stage.NONE:
            raise InvalidTransition("cannot override back to 'none'; use reset()")

        def apply(state: WorkflowState) -> None:
            target_index = len(GEARS) if target == Stage.DONE else GEARS.index(target)
            if target_index < len(state.completed_stages):
                raise InvalidTransition(
                    f"cannot override backwards to {target.value!r}"
                )
            now = utc_now()
            for gear in GEARS[len(state.completed_stages) : target_index]:
                previous = state.stage_details.get(gear)
                state.completed_stages.append(gear)
                state.stage_details[gear] = StageDetail(
                    status=StageStatus.SKIPPED,
                    started_at=previous.started_at if previous else now,
                    completed_at=now,
                    attempts=previous.attempts if previous else 0,
                    metadata={**(previous.metadata if previous else {}), "skip_reason": reason},
                )
            state.current_stage = target

        state = self._update(apply, None, allow_skip=True)
        logger.warning("stage_override", target=target.value, reason=reason)
        return state

    def record_roadmap_items(
        self, items: list[RoadmapEntry | dict[str, Any]]
    ) -> WorkflowState:
        """Merge roadmap items into the state by id; later items replace earlier ones.

        Raises:
            InvalidParameter: An entry is malformed. Nothing is recorded.
        """
        entries = []
        for index, raw in enumerate(items):
            try:
                entries.append(RoadmapEntry.model_validate(raw))
            except ValidationError as e:
                raise InvalidParameter(
                    f"roadmap_items[{index}]", "; ".join(validation_messages(e))
                ) from e

        def apply(state: WorkflowState) -> None:
            by_id = {entry.id: entry for entry in state.roadmap_items}
            for entry in entries:
                by_id[entry.id] = entry
            state.roadmap_items = list(by_id.values())

        return self.update(apply)

    def reset(self) -> Path | None:
        """Archive the current document. Returns the archive path, if any."""
        target = self._unique_sibling("archived")
        try:
            os.replace(self._path, target)
        except FileNotFoundError:
            return None
        logger.warning("state_reset", path=str(self._path), archive=str(target))
        return target
