"""Stage collaborators: the external tools that do the work of each gear."""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from gearshift.config import Settings
from gearshift.models import Stage, WorkflowState

logger = structlog.get_logger()


@dataclass
class StageResult:
    """Result from running one gear."""

    success: bool
    metadata: dict[str, Any] = field(default_factory=dict)
    roadmap_items: list[dict[str, Any]] = field(default_factory=list)
    error: str = ""


class StageCollaborator(Protocol):
    """Runs a gear against a read-only snapshot of the workflow state."""

    def run(self, stage: Stage, state: WorkflowState) -> StageResult: ...


class CommandCollaborator:
    """Invokes an external command for each gear.

    The command is called as ``<command> <stage> --route <route>`` in the
    project directory. A JSON object on stdout may carry ``metadata`` and
    ``roadmap_items``; any other output is kept as ``metadata["output"]``.
    """

    def __init__(self, settings: Settings) -> None:
        self._command = settings.stage_command
        self._timeout = settings.stage_timeout

    def run(self, stage: Stage, state: WorkflowState) -> StageResult:
        cmd = [self._command, stage.value]
        if state.route is not None:
            cmd.extend(["--route", state.route.value])
        if state.auto_config is not None:
            cmd.extend(
                [
                    "--clarifications",
                    state.auto_config.clarifications_strategy.value,
                    "--scope",
                    state.auto_config.implementation_scope.value,
                ]
            )

        cwd = state.metadata.project_path
        logger.info("running_stage_command", stage=stage.value, cwd=cwd, command=self._command)

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                cwd=cwd,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired:
            logger.error("stage_command_timeout", stage=stage.value, timeout=self._timeout)
            return StageResult(
                success=False,
                error=f"{self._command} timed out after {self._timeout}s",
            )
        except FileNotFoundError:
            logger.error("stage_command_not_found", command=self._command)
            return StageResult(
                success=False,
                error=f"Stage command not found: {self._command}",
            )

        if result.returncode != 0:
            error_msg = result.stderr or f"{self._command} exited with code {result.returncode}"
            logger.error(
                "stage_command_failed",
                stage=stage.value,
                error=error_msg,
                returncode=result.returncode,
            )
            return StageResult(success=False, error=error_msg)

        return self._parse_output(result.stdout)

    @staticmethod
    def _parse_output(stdout: str) -> StageResult:
        try:
            response = json.loads(stdout)
        except json.JSONDecodeError:
            return StageResult(success=True, metadata={"output": stdout[:2000]})

        if not isinstance(response, dict):
            return StageResult(success=True, metadata={"output": response})

        metadata = response.get("metadata")
        items = response.get("roadmap_items")
        return StageResult(
            success=True,
            metadata=metadata if isinstance(metadata, dict) else {},
            roadmap_items=[i for i in items if isinstance(i, dict)]
            if isinstance(items, list)
            else [],
        )
