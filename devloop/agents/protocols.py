from __future__ import annotations
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from ..core.errors import InvalidTransitionError, PlanError
from ..core.logger import warn


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def now() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class StepType(str, Enum):
    RESEARCH = "research"
    ARCHITECTURE = "architecture"
    IMPLEMENTATION = "implementation"
    TESTING = "testing"
    DEPLOYMENT = "deployment"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    COMPLETED = "completed"
    FAILED = "failed"


_ALLOWED_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.IN_PROGRESS},
    StepStatus.IN_PROGRESS: {StepStatus.COMPLETED, StepStatus.BLOCKED},
    StepStatus.COMPLETED: set(),
    StepStatus.BLOCKED: set(),
}


class Task(BaseModel):
    id: str = Field(default_factory=lambda: new_id("task"))
    description: str
    requirements: str = ""
    status: TaskStatus = TaskStatus.IDLE
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=now)
    updated_at: datetime = Field(default_factory=now)


class Step(BaseModel):
    id: str
    title: str = ""
    description: str = ""
    type: StepType = StepType.IMPLEMENTATION
    dependencies: List[str] = Field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    estimated_complexity: Literal["low", "medium", "high"] = "medium"

    @model_validator(mode="before")
    @classmethod
    def _coerce_model_output(cls, data: Any) -> Any:
        # Completions use camelCase keys and free-form values
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "estimatedComplexity" in data and "estimated_complexity" not in data:
            data["estimated_complexity"] = data.pop("estimatedComplexity")
        if data.get("estimated_complexity") not in ("low", "medium", "high"):
            data["estimated_complexity"] = "medium"
        if data.get("type") not in {t.value for t in StepType} and not isinstance(data.get("type"), StepType):
            data["type"] = StepType.IMPLEMENTATION
        if data.get("status") not in {s.value for s in StepStatus} and not isinstance(data.get("status"), StepStatus):
            data["status"] = StepStatus.PENDING
        deps = data.get("dependencies") or []
        data["dependencies"] = [str(d) for d in deps] if isinstance(deps, list) else [str(deps)]
        if data.get("id") is not None:
            data["id"] = str(data["id"])
        return data

    def transition(self, status: StepStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"Step {self.id}: {self.status.value} -> {status.value} is not allowed")
        self.status = status


class Plan(BaseModel):
    id: str = Field(default_factory=lambda: new_id("plan"))
    task_id: str
    title: str = ""
    description: str = ""
    steps: List[Step] = Field(default_factory=list)
    status: PlanStatus = PlanStatus.ACTIVE
    previous_plan_id: Optional[str] = None
    revision_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=now)
    updated_at: datetime = Field(default_factory=now)

    @model_validator(mode="after")
    def _check_step_graph(self) -> "Plan":
        ids = [s.id for s in self.steps]
        if len(ids) != len(set(ids)):
            raise PlanError(f"Plan {self.id} has duplicate step ids: {ids}")
        known = set(ids)
        for step in self.steps:
            unknown = [d for d in step.dependencies if d not in known]
            if unknown:
                raise PlanError(f"Step {step.id} depends on unknown steps {unknown}")
        return self

    @staticmethod
    def normalize_steps(raw_steps: List[Any]) -> List[Step]:
        """
        Repair model output into a valid step list:
        - missing ids become step-<n>, duplicate ids get a numeric suffix
        - dependencies on unknown steps (or on the step itself) are dropped
        """
        steps: List[Step] = []
        seen: set[str] = set()
        for index, raw in enumerate(raw_steps or []):
            if isinstance(raw, Step):
                raw = raw.model_dump()
            if not isinstance(raw, dict):
                raw = {"description": str(raw)}
            raw = dict(raw)
            step_id = str(raw.get("id") or f"step-{index + 1}")
            base, n = step_id, 2
            while step_id in seen:
                step_id = f"{base}-{n}"
                n += 1
            seen.add(step_id)
            raw["id"] = step_id
            raw.setdefault("title", raw.get("description", step_id)[:80] if raw.get("description") else step_id)
            steps.append(Step.model_validate(raw))
        for step in steps:
            kept = []
            for dep in step.dependencies:
                if dep not in seen or dep == step.id:
                    warn(f"Step '{step.id}' depends on unknown step '{dep}', ignoring this dep.")
                    continue
                if dep not in kept:
                    kept.append(dep)
            step.dependencies = kept
        return steps

    def get_step(self, step_id: str | None) -> Optional[Step]:
        if step_id is None:
            return None
        return next((s for s in self.steps if s.id == step_id), None)

    def pending_steps(self) -> List[Step]:
        return [s for s in self.steps if s.status == StepStatus.PENDING]

    def in_progress_steps(self) -> List[Step]:
        return [s for s in self.steps if s.status == StepStatus.IN_PROGRESS]

    def completed_steps(self) -> List[Step]:
        return [s for s in self.steps if s.status == StepStatus.COMPLETED]

    def blocked_steps(self) -> List[Step]:
        return [s for s in self.steps if s.status == StepStatus.BLOCKED]

    def is_runnable(self, step: Step) -> bool:
        if step.status != StepStatus.PENDING:
            return False
        for dep_id in step.dependencies:
            dep = self.get_step(dep_id)
            if dep is None or dep.status != StepStatus.COMPLETED:
                return False
        return True

    def runnable_steps(self) -> List[Step]:
        """Pending steps whose dependencies are all completed, in insertion order."""
        return [s for s in self.steps if self.is_runnable(s)]

    def missing_dependencies(self, step: Step) -> List[str]:
        return [d for d in step.dependencies
                if (dep := self.get_step(d)) is None or dep.status != StepStatus.COMPLETED]

    def progress(self) -> float:
        if not self.steps:
            return 0.0
        return round(100.0 * len(self.completed_steps()) / len(self.steps), 1)

    def mark_step(self, step_id: str, status: StepStatus) -> Step:
        step = self.get_step(step_id)
        if step is None:
            raise PlanError(f"Step {step_id} not found in plan {self.id}")
        step.transition(status)
        self.updated_at = now()
        return step

    def revision(self, steps: List[Step], *, title: str | None = None, description: str | None = None,
                 reason: str | None = None) -> "Plan":
        """A new active plan that supersedes this one; this plan is left untouched."""
        return Plan(
            task_id=self.task_id,
            title=title or self.title,
            description=description or self.description,
            steps=[s.model_copy(deep=True) for s in steps],
            previous_plan_id=self.id,
            revision_reason=reason,
        )


class ArtifactType(str, Enum):
    CODE = "code"
    TEST = "test"
    DOCUMENT = "document"
    RESEARCH = "research"


class Artifact(BaseModel):
    id: str = Field(default_factory=lambda: new_id("artifact"))
    type: ArtifactType = ArtifactType.CODE
    path: Optional[str] = None
    content: Optional[str] = None
    description: str = ""
    task_id: Optional[str] = None
    step_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=now)


class ActionType(str, Enum):
    RESEARCH = "research"
    GENERATE_CODE = "generate_code"
    ARCHITECTURE = "architecture"
    TESTING = "testing"
    DEPLOYMENT = "deployment"
    UNBLOCK_PLAN = "unblock_plan"
    COMPLETION = "completion"
    BROWSE_WEB = "browse_web"
    FILE_OPERATION = "file_operation"
    COMPUTER_CONTROL = "computer_control"


class ActionBase(BaseModel):
    id: str = Field(default_factory=lambda: new_id("action"))
    step_id: Optional[str] = None
    plan_id: Optional[str] = None
    task_id: Optional[str] = None
    description: str = ""
    force_progress: bool = False


class ResearchAction(ActionBase):
    type: Literal[ActionType.RESEARCH] = ActionType.RESEARCH
    queries: List[str] = Field(default_factory=list)
    research_context: Dict[str, Any] = Field(default_factory=dict)


class CodeFile(BaseModel):
    path: str
    language: str = "text"
    code: str = ""


class CodeAction(ActionBase):
    type: Literal[ActionType.GENERATE_CODE] = ActionType.GENERATE_CODE
    step: Optional[Step] = None
    plan_context: str = ""
    project_structure: Dict[str, Any] = Field(default_factory=dict)
    existing_code: List[CodeFile] = Field(default_factory=list)
    dependencies: List[Step] = Field(default_factory=list)
    dependency_artifacts: List[Artifact] = Field(default_factory=list)


class ArchitectureAction(ActionBase):
    type: Literal[ActionType.ARCHITECTURE] = ActionType.ARCHITECTURE
    plan_context: str = ""
    project_structure: Dict[str, Any] = Field(default_factory=dict)


class TestingAction(ActionBase):
    type: Literal[ActionType.TESTING] = ActionType.TESTING
    plan_context: str = ""
    components_to_test: List[Artifact] = Field(default_factory=list)


class DeploymentAction(ActionBase):
    type: Literal[ActionType.DEPLOYMENT] = ActionType.DEPLOYMENT
    plan_context: str = ""
    environment: str = "development"


class BlockedStep(BaseModel):
    step_id: str
    title: str = ""
    description: str = ""
    missing_dependencies: List[str] = Field(default_factory=list)


class UnblockAction(ActionBase):
    type: Literal[ActionType.UNBLOCK_PLAN] = ActionType.UNBLOCK_PLAN
    blocked_steps: List[BlockedStep] = Field(default_factory=list)
    unblock_attempt: int = 1
    plan_context: str = ""


class CompletionAction(ActionBase):
    type: Literal[ActionType.COMPLETION] = ActionType.COMPLETION


class BrowseAction(ActionBase):
    type: Literal[ActionType.BROWSE_WEB] = ActionType.BROWSE_WEB
    url: Optional[str] = None
    search_query: Optional[str] = None
    analyze_content: bool = False


class FileOperationAction(ActionBase):
    type: Literal[ActionType.FILE_OPERATION] = ActionType.FILE_OPERATION
    operation: Literal["read", "write", "delete", "list", "mkdir"]
    path: Optional[str] = None
    content: Optional[str] = None


class ComputerControlAction(ActionBase):
    type: Literal[ActionType.COMPUTER_CONTROL] = ActionType.COMPUTER_CONTROL
    control_type: Literal["execute", "screenshot", "input", "app"]
    command: Optional[str] = None
    region: Optional[Dict[str, int]] = None
    input_type: Optional[str] = None
    input_value: Optional[str] = None
    app_action: Optional[str] = None
    app_name: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


Action = Annotated[
    Union[
        ResearchAction, CodeAction, ArchitectureAction, TestingAction, DeploymentAction,
        UnblockAction, CompletionAction, BrowseAction, FileOperationAction, ComputerControlAction,
    ],
    Field(discriminator="type"),
]


class ResultStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ActionResult(BaseModel):
    id: str = Field(default_factory=lambda: new_id("result"))
    action_id: str
    status: ResultStatus
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    stack: Optional[str] = None
    artifacts: List[Artifact] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=now)
    action: Optional[Action] = None

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.SUCCESS


class Reflection(BaseModel):
    id: str = Field(default_factory=lambda: new_id("reflection"))
    task_id: Optional[str] = None
    needs_plan_revision: bool = False
    needs_research: bool = False
    research_queries: List[str] = Field(default_factory=list)
    insights: List[str] = Field(default_factory=list)
    recommendation: str = ""
    plan_revision_strategy: Optional[str] = None
    confidence: Literal["high", "medium", "low"] = "medium"
    is_final: bool = False
    timestamp: datetime = Field(default_factory=now)

    @model_validator(mode="before")
    @classmethod
    def _coerce_model_output(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        aliases = {
            "needsPlanRevision": "needs_plan_revision",
            "needsResearch": "needs_research",
            "researchQueries": "research_queries",
            "planRevisionStrategy": "plan_revision_strategy",
        }
        data = {aliases.get(k, k): v for k, v in data.items()}
        if data.get("confidence") not in ("high", "medium", "low"):
            data["confidence"] = "medium"
        for key in ("insights", "research_queries"):
            value = data.get(key)
            if isinstance(value, str):
                data[key] = [value]
            elif value is None:
                data.pop(key, None)
            elif isinstance(value, list):
                data[key] = [v if isinstance(v, str) else str(v) for v in value]
        if not isinstance(data.get("recommendation", ""), str):
            data["recommendation"] = str(data["recommendation"])
        return data


class FinalReport(BaseModel):
    task_id: str
    summary: str = ""
    key_accomplishments: List[str] = Field(default_factory=list)
    components: List[Dict[str, Any]] = Field(default_factory=list)
    challenges: List[Dict[str, Any]] = Field(default_factory=list)
    code_quality: str = ""
    future_improvements: List[str] = Field(default_factory=list)
    learnings: List[str] = Field(default_factory=list)
    overall_evaluation: str = ""
    status: str = "completed"
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=now)


class CurrentPlanView(BaseModel):
    id: str
    progress: float = 0.0
    completed_count: int = 0
    pending_count: int = 0
    current_step: Optional[Step] = None


class PerceivedState(BaseModel):
    timestamp: datetime = Field(default_factory=now)
    project_structure: Optional[Dict[str, Any]] = None
    relevant_code: List[CodeFile] = Field(default_factory=list)
    current_plan: CurrentPlanView
    environment_info: Optional[Dict[str, Any]] = None
    visual_snapshot: Optional[Any] = None


class HistoryEntry(BaseModel):
    action: Action
    result: Optional[ActionResult] = None


class TaskStatusReport(BaseModel):
    task_id: str
    status: TaskStatus
    progress: float = 0.0
    current_step: Optional[str] = None
    last_activity: Optional[datetime] = None
    iteration: int = 0
    running: bool = False
    last_error: Optional[str] = None
