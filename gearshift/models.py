"""Data models for gearshift.

The persisted workflow-state document is modelled with pydantic so a loaded
document is either fully valid or rejected with a ValidationError. Roadmap
items are scored in memory as frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, StrictBool, ValidationError, field_validator, model_validator

SCHEMA_VERSION = 1


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class Stage(str, Enum):
    """Workflow stages, in pipeline order."""

    NONE = "none"
    ANALYZE = "analyze"
    REVERSE_ENGINEER = "reverse-engineer"
    CREATE_SPECS = "create-specs"
    GAP_ANALYSIS = "gap-analysis"
    COMPLETE_SPEC = "complete-spec"
    IMPLEMENT = "implement"
    DONE = "done"


# The six gears a collaborator can run, in order
GEARS: list[Stage] = [
    Stage.ANALYZE,
    Stage.REVERSE_ENGINEER,
    Stage.CREATE_SPECS,
    Stage.GAP_ANALYSIS,
    Stage.COMPLETE_SPEC,
    Stage.IMPLEMENT,
]

# All valid forward transitions of current_stage
VALID_TRANSITIONS: dict[Stage, Stage] = {
    Stage.NONE: Stage.ANALYZE,
    Stage.ANALYZE: Stage.REVERSE_ENGINEER,
    Stage.REVERSE_ENGINEER: Stage.CREATE_SPECS,
    Stage.CREATE_SPECS: Stage.GAP_ANALYSIS,
    Stage.GAP_ANALYSIS: Stage.COMPLETE_SPEC,
    Stage.COMPLETE_SPEC: Stage.IMPLEMENT,
    Stage.IMPLEMENT: Stage.DONE,
}

GEAR_NAMES: dict[Stage, str] = {
    Stage.ANALYZE: "Gear 1: Initial Analysis",
    Stage.REVERSE_ENGINEER: "Gear 2: Reverse Engineer",
    Stage.CREATE_SPECS: "Gear 3: Create Specifications",
    Stage.GAP_ANALYSIS: "Gear 4: Gap Analysis",
    Stage.COMPLETE_SPEC: "Gear 5: Complete Specification",
    Stage.IMPLEMENT: "Gear 6: Implement from Spec",
}


class Route(str, Enum):
    """Pipeline route, fixed for the life of a run."""

    GREENFIELD = "greenfield"
    BROWNFIELD = "brownfield"


ROUTE_DESCRIPTIONS: dict[Route, str] = {
    Route.GREENFIELD: "Build new app from business logic (tech-agnostic)",
    Route.BROWNFIELD: "Manage existing app with Spec Kit (tech-prescriptive)",
}


class ClarificationsStrategy(str, Enum):
    DEFER = "defer"
    PROMPT = "prompt"
    SKIP = "skip"


class ImplementationScope(str, Enum):
    NONE = "none"
    P0 = "p0"
    P0_P1 = "p0_p1"
    ALL = "all"


class StageStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


def allowed_current_stages(completed: list[Stage]) -> set[Stage]:
    """Return the values current_stage may hold for a given completion prefix."""
    if not completed:
        return {Stage.NONE, Stage.ANALYZE}
    if len(completed) >= len(GEARS):
        return {Stage.DONE}
    return {GEARS[len(completed)]}


class Priority(str, Enum):
    """Priority tiers, most urgent first."""

    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"

    @property
    def rank(self) -> int:
        return PRIORITY_ORDER.index(self)


PRIORITY_ORDER: list[Priority] = [Priority.P0, Priority.P1, Priority.P2, Priority.P3]


class ItemKind(str, Enum):
    SPEC_GAP = "spec-gap"
    FEATURE_GAP = "feature-gap"
    ENHANCEMENT = "enhancement"
    TECHNICAL_DEBT = "technical-debt"
    DOCUMENTATION = "documentation"
    TESTING = "testing"


class ItemStatus(str, Enum):
    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    BLOCKED = "blocked"


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EstimateSource(str, Enum):
    HUMAN = "human"
    AI = "ai"


# --- Persisted state document ----------------------------------------------


class AutoConfig(BaseModel):
    """Cruise control settings; opaque to the state machine beyond validation."""

    clarifications_strategy: ClarificationsStrategy = ClarificationsStrategy.DEFER
    implementation_scope: ImplementationScope = ImplementationScope.NONE
    pause_between_gears: StrictBool = False


class StageDetail(BaseModel):
    """Progress record for a single gear."""

    status: StageStatus
    started_at: str = Field(min_length=1)
    completed_at: str | None = None
    attempts: int = Field(default=0, ge=0, strict=True)
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProjectMetadata(BaseModel):
    project_name: str = Field(min_length=1)
    project_path: str = Field(min_length=1)
    route_description: str | None = None


class EffortEntry(BaseModel):
    hours: float = Field(ge=0)
    confidence: Confidence = Confidence.MEDIUM
    source: EstimateSource = EstimateSource.HUMAN


class RoadmapEntry(BaseModel):
    """A roadmap item as reported by a collaborator and recorded in state."""

    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str = ""
    kind: ItemKind = ItemKind.ENHANCEMENT
    category: str = ""
    phase: int = Field(default=1, ge=1)
    dependencies: list[str] = Field(default_factory=list)
    status: ItemStatus = ItemStatus.NOT_STARTED
    effort_estimate: EffortEntry | None = None
    strategic_alignment: list[str] = Field(default_factory=list)
    priority: Priority | None = None

    @field_validator("id", "title", mode="before")
    @classmethod
    def strip_identifier(cls, v: Any) -> Any:
        # YAML reads ids such as 12 as numbers
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            v = str(v)
        return v.strip() if isinstance(v, str) else v

    @field_validator("priority", mode="before")
    @classmethod
    def blank_priority(cls, v: Any) -> Any:
        return None if v == "" else v

    @field_validator("description", "category", mode="before")
    @classmethod
    def empty_text(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("dependencies", "strategic_alignment", mode="before")
    @classmethod
    def string_list(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, (list, tuple)):
            return [str(x) if isinstance(x, (int, float)) and not isinstance(x, bool) else x for x in v]
        return v

    def to_item(self) -> RoadmapItem:
        estimate = None
        if self.effort_estimate is not None:
            estimate = EffortEstimate(
                hours=self.effort_estimate.hours,
                confidence=self.effort_estimate.confidence,
                source=self.effort_estimate.source,
            )
        return RoadmapItem(
            id=self.id,
            title=self.title,
            description=self.description,
            kind=self.kind,
            category=self.category,
            phase=self.phase,
            dependencies=tuple(self.dependencies),
            status=self.status,
            effort_estimate=estimate,
            strategic_alignment=tuple(self.strategic_alignment),
            priority=self.priority,
        )


class WorkflowState(BaseModel):
    """The persisted workflow-state document for one project directory."""

    schema_version: int = Field(default=SCHEMA_VERSION, ge=1, strict=True)
    created_at: str = Field(default_factory=utc_now, min_length=1)
    updated_at: str = Field(default_factory=utc_now, min_length=1)
    revision: int = Field(default=0, ge=0, strict=True)
    current_stage: Stage = Stage.NONE
    completed_stages: list[Stage] = Field(default_factory=list)
    route: Route | None = None
    auto_mode: StrictBool = False
    auto_config: AutoConfig | None = None
    stage_details: dict[Stage, StageDetail] = Field(default_factory=dict)
    metadata: ProjectMetadata
    roadmap_items: list[RoadmapEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_stage_order(self) -> WorkflowState:
        completed = self.completed_stages
        if len(set(completed)) != len(completed):
            raise ValueError("completed_stages contains duplicates")
        if completed != GEARS[: len(completed)]:
            raise ValueError("completed_stages must follow gear order without gaps")

        allowed = allowed_current_stages(completed)
        if self.current_stage not in allowed:
            raise ValueError(
                f"current_stage {self.current_stage.value!r} does not match completed_stages "
                f"(expected one of {sorted(s.value for s in allowed)})"
            )

        stray = [s.value for s in self.stage_details if s not in GEARS]
        if stray:
            raise ValueError(f"stage_details has entries for non-gear stages: {stray}")
        return self

    @property
    def is_done(self) -> bool:
        return self.current_stage == Stage.DONE

    def next_gear(self) -> Stage | None:
        """Return the gear that should run next, or None when the pipeline is done."""
        if self.current_stage == Stage.DONE:
            return None
        if self.current_stage == Stage.NONE:
            return Stage.ANALYZE
        return self.current_stage


def validation_messages(error: ValidationError) -> list[str]:
    """Flatten a ValidationError into ``"location: message"`` strings."""
    messages = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"])
        messages.append(f"{location}: {detail['msg']}" if location else detail["msg"])
    return messages


def validate_state_document(data: Any) -> list[str]:
    """Check a raw state document against the schema. Returns a list of problems."""
    if not isinstance(data, dict):
        return ["document must be a JSON object"]
    try:
        WorkflowState.model_validate(data)
    except ValidationError as e:
        return validation_messages(e)
    return []


# --- Roadmap scoring ---------------------------------------------------------


@dataclass(frozen=True)
class EffortEstimate:
    """Effort in hours with an optimistic/pessimistic range."""

    hours: float
    confidence: Confidence = Confidence.MEDIUM
    source: EstimateSource = EstimateSource.AI

    @property
    def optimistic(self) -> int:
        return round(self.hours * 0.7)

    @property
    def pessimistic(self) -> int:
        return round(self.hours * 1.5)

    @property
    def display(self) -> str:
        return f"{self.hours:g}h ({self.optimistic}-{self.pessimistic}h)"


@dataclass(frozen=True)
class ScoringFactors:
    """Signals that fired for each dimension. Descriptive only."""

    impact: tuple[str, ...] = ()
    effort: tuple[str, ...] = ()
    strategic: tuple[str, ...] = ()
    risk: tuple[str, ...] = ()


@dataclass(frozen=True)
class ItemScore:
    """Derived scores for a roadmap item. Always recomputable."""

    impact: float
    effort: float
    roi: float
    strategic_value: float
    risk_score: float
    priority_score: float
    priority: Priority
    effort_hours: int
    factors: ScoringFactors = field(default_factory=ScoringFactors)


@dataclass(frozen=True)
class RoadmapItem:
    """A candidate unit of work."""

    id: str
    title: str
    description: str = ""
    kind: ItemKind = ItemKind.ENHANCEMENT
    category: str = ""
    phase: int = 1
    dependencies: tuple[str, ...] = ()
    status: ItemStatus = ItemStatus.NOT_STARTED
    effort_estimate: EffortEstimate | None = None
    strategic_alignment: tuple[str, ...] = ()
    priority: Priority | None = None
    score: ItemScore | None = None

    @property
    def effective_priority(self) -> Priority:
        """Scored tier if available, else the declared tier, else P3."""
        if self.score is not None:
            return self.score.priority
        return self.priority or Priority.P3

    @property
    def priority_score(self) -> float:
        return self.score.priority_score if self.score is not None else 0.0

    def to_dict(self) -> dict[str, Any]:
        """Serialize the authoritative fields; derived scores are left out."""
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "kind": self.kind.value,
            "category": self.category,
            "phase": self.phase,
            "dependencies": list(self.dependencies),
            "status": self.status.value,
            "strategic_alignment": list(self.strategic_alignment),
        }
        if self.effort_estimate is not None:
            data["effort_estimate"] = {
                "hours": self.effort_estimate.hours,
                "confidence": self.effort_estimate.confidence.value,
                "source": self.effort_estimate.source.value,
            }
        if self.priority is not None:
            data["priority"] = self.priority.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RoadmapItem:
        """Build an item from a raw mapping. Raises pydantic.ValidationError on bad input."""
        return RoadmapEntry.model_validate(data).to_item()



@dataclass(frozen=True)
class ProjectContext:
    """Read-only facts about the project being scored against."""

    language: str = ""
    frameworks: tuple[str, ...] = ()
    lines_of_code: int = 0
    current_features: tuple[str, ...] = ()
    name: str = ""


def score_as_dict(score: ItemScore) -> dict[str, Any]:
    """Flatten an ItemScore for reports and logging."""
    data = asdict(score)
    data["priority"] = score.priority.value
    return data
