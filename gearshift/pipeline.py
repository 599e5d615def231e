"""Runs one gear at a time: learn the stage, invoke its collaborator, advance."""

from __future__ import annotations

import time
from collections.abc import Collection
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import ValidationError

from gearshift.collaborators import StageCollaborator, StageResult
from gearshift.config import Settings
from gearshift.errors import StateNotFound
from gearshift.models import (
    ProjectContext,
    RoadmapEntry,
    RoadmapItem,
    Stage,
    WorkflowState,
    validation_messages,
)
from gearshift.prioritizer import Prioritizer, RoadmapPlan
from gearshift.state_store import StateStore

logger = structlog.get_logger()


@dataclass
class StageOutcome:
    """What happened when a gear was run."""

    stage: Stage | None
    success: bool
    state: WorkflowState
    error: str = ""


class StageRunner:
    """Advances the workflow by one gear per call."""

    def __init__(
        self,
        store: StateStore,
        collaborator: StageCollaborator,
        settings: Settings,
        prioritizer: Prioritizer | None = None,
    ) -> None:
        self._store = store
        self._collaborator = collaborator
        self._prioritizer = prioritizer or Prioritizer()
        self._max_retries = max(settings.max_retries, 1)
        self._backoff_base = settings.retry_backoff_base

    def current_state(self) -> WorkflowState:
        try:
            return self._store.load()
        except StateNotFound:
            return self._store.initialize()

    def run_stage(self) -> StageOutcome:
        """Run the next gear. Returns a failed outcome if nothing can run."""
        state = self.current_state()
        stage = state.next_gear()
        if stage is None:
            logger.info("pipeline_done", project=state.metadata.project_name)
            return StageOutcome(stage=None, success=False, state=state, error="pipeline is done")

        if state.route is None and stage != Stage.ANALYZE:
            logger.warning("route_not_set", stage=stage.value)
            return StageOutcome(
                stage=stage,
                success=False,
                state=state,
                error=f"route must be chosen before {stage.value}",
            )

        log = logger.bind(stage=stage.value, project=state.metadata.project_name)
        log.info("starting_stage")
        state = self._store.start_stage(stage)

        result = self._run_with_retries(stage, state)

        if not result.success:
            log.error("stage_failed", error=result.error)
            state = self._store.fail_stage(stage, result.error)
            return StageOutcome(stage=stage, success=False, state=state, error=result.error)

        if result.roadmap_items:
            entries = self._valid_roadmap_entries(result.roadmap_items, log)
            if entries:
                self._store.record_roadmap_items(entries)

        state = self._store.complete_stage(stage, result.metadata)
        log.info("stage_finished", next_stage=state.current_stage.value)
        return StageOutcome(stage=stage, success=True, state=state)

    def _run_with_retries(self, stage: Stage, state: WorkflowState) -> StageResult:
        """Run the collaborator with retry logic."""
        last_result = StageResult(success=False, error="No attempts made")

        for attempt in range(1, self._max_retries + 1):
            logger.info(
                "stage_attempt",
                stage=stage.value,
                attempt=attempt,
                max_retries=self._max_retries,
            )

            try:
                last_result = self._collaborator.run(stage, state)
            except Exception as e:
                logger.exception("collaborator_error", stage=stage.value)
                last_result = StageResult(success=False, error=f"{type(e).__name__}: {e}")

            if last_result.success:
                return last_result

            # Exponential backoff before retry
            if attempt < self._max_retries:
                wait_time = self._backoff_base ** attempt
                logger.info("retrying", wait_seconds=wait_time)
                time.sleep(wait_time)

        return last_result

    @staticmethod
    def _valid_roadmap_entries(raw_items: list[Any], log: Any) -> list[RoadmapEntry]:
        """Parse reported items one at a time, dropping the malformed ones."""
        entries = []
        for index, raw in enumerate(raw_items):
            try:
                entries.append(RoadmapEntry.model_validate(raw))
            except ValidationError as e:
                log.warning(
                    "invalid_roadmap_item",
                    index=index,
                    id=raw.get("id") if isinstance(raw, dict) else None,
                    errors=validation_messages(e),
                )
        return entries

    def roadmap_items(self) -> list[RoadmapItem]:
        """Roadmap items recorded in state by the collaborators.

        Read-only: a project without a state document has an empty roadmap.
        """
        try:
            state = self._store.load()
        except StateNotFound:
            return []
        return [entry.to_item() for entry in state.roadmap_items]

    def plan_roadmap(
        self,
        context: ProjectContext,
        completed_ids: Collection[str] = (),
    ) -> RoadmapPlan:
        """Prioritize and order the roadmap items accumulated in state."""
        return self._prioritizer.plan(self.roadmap_items(), context, completed_ids)
