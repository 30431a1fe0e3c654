"""Task pipeline data model.

These Pydantic models are the handshake between the AI boundary, the
orchestrator, the commit protocol and persistence.  ``Change`` is a
discriminated union on ``action``: update/create always carry
``new_content``, delete never does, so "missing content" cannot reach the
overlay or the commit builder.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

from autodidact.errors import TaskStateError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Task status
# ---------------------------------------------------------------------------


class TaskStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.completed, TaskStatus.failed)


_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.pending: frozenset({TaskStatus.processing, TaskStatus.failed}),
    TaskStatus.processing: frozenset({TaskStatus.completed, TaskStatus.failed}),
    TaskStatus.completed: frozenset(),
    TaskStatus.failed: frozenset(),
}


# ---------------------------------------------------------------------------
# Repository reference / inputs
# ---------------------------------------------------------------------------


class RepoRef(BaseModel):
    """Remote repository + branch a task reads from and commits to."""

    model_config = ConfigDict(frozen=True)

    owner: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    branch: str = Field(default="main", min_length=1)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class InputFile(BaseModel):
    """Caller-provided file snapshot (content optional: fetched when absent)."""

    path: str = Field(..., min_length=1)
    content: str | None = None
    sha: str | None = None


class TaskRequest(BaseModel):
    """Everything needed to create a task."""

    instruction: str = Field(..., min_length=1, max_length=20000)
    repo: RepoRef | None = None
    files: list[InputFile] = Field(default_factory=list)
    additional_context: str | None = None
    auto_apply: bool = False
    trigger: dict[str, Any] | None = Field(
        default=None,
        description="Origin of the task, e.g. {'source': 'webhook', 'event': 'push'}",
    )


# ---------------------------------------------------------------------------
# Plan / Step
# ---------------------------------------------------------------------------


class TargetFile(BaseModel):
    path: str = Field(..., min_length=1)


class Step(BaseModel):
    id: str = ""
    title: str = ""
    objective: str = ""
    target_files: list[TargetFile] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        # Models frequently emit numeric ids.
        return "" if value is None else str(value)

    @field_validator("target_files", mode="before")
    @classmethod
    def _coerce_targets(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [{"path": v} if isinstance(v, str) else v for v in value]
        return value


class Plan(BaseModel):
    summary: str = ""
    steps: list[Step] = Field(..., min_length=1)

    @field_validator("summary", mode="before")
    @classmethod
    def _coerce_summary(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @model_validator(mode="after")
    def _fill_step_ids(self) -> "Plan":
        for index, step in enumerate(self.steps, start=1):
            if not step.id:
                step.id = str(index)
            if not step.title:
                step.title = f"Step {step.id}"
        return self


# ---------------------------------------------------------------------------
# Changes (discriminated on ``action``)
# ---------------------------------------------------------------------------


class _ChangeBase(BaseModel):
    path: str = Field(..., min_length=1)
    description: str = ""
    language: str = ""

    @field_validator("description", "language", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> str:
        return "" if value is None else str(value)


class UpdateChange(_ChangeBase):
    action: Literal["update"] = "update"
    new_content: str


class CreateChange(_ChangeBase):
    action: Literal["create"] = "create"
    new_content: str


class DeleteChange(_ChangeBase):
    action: Literal["delete"] = "delete"


Change = Annotated[
    Union[UpdateChange, CreateChange, DeleteChange],
    Field(discriminator="action"),
]

ChangeAction = Literal["update", "create", "delete"]


class StepOutput(BaseModel):
    summary: str = ""
    changes: list[Change] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)


class GeneratedChange(BaseModel):
    """One applied file edit, as recorded in task metadata."""

    path: str
    action: ChangeAction
    step_id: str
    step_title: str = ""
    line_delta: int
    summary: str = ""
    description: str = ""
    language: str = ""
    new_content: str | None = None

    @model_validator(mode="after")
    def _content_matches_action(self) -> "GeneratedChange":
        if self.action == "delete" and self.new_content is not None:
            raise ValueError("delete changes carry no content")
        if self.action != "delete" and self.new_content is None:
            raise ValueError(f"{self.action} changes require new_content")
        return self


# ---------------------------------------------------------------------------
# Overlay entries
# ---------------------------------------------------------------------------


class FileSnapshot(BaseModel):
    """One overlay entry.

    ``committed`` is the content last known to be committed upstream, or
    None when the path does not exist upstream.  It moves only when a
    commit lands, not when a step writes the file.
    """

    path: str
    content: str = ""
    sha: str | None = None
    committed: str | None = None

    @property
    def exists_upstream(self) -> bool:
        return self.committed is not None

    @property
    def dirty(self) -> bool:
        return self.committed is None or self.content != self.committed


# ---------------------------------------------------------------------------
# Commit / conflict results
# ---------------------------------------------------------------------------


class CommitResult(BaseModel):
    attempted: bool = False
    success: bool = False
    skipped: bool = False
    conflict: bool = False
    commit_sha: str | None = None
    commit_url: str | None = None
    changed_paths: list[str] = Field(default_factory=list)
    message: str = ""
    error: str | None = None


class ChangedFile(BaseModel):
    path: str
    status: str = "modified"
    additions: int = 0
    deletions: int = 0
    changes: int = 0


class ConflictReport(BaseModel):
    base_ref: str
    head_ref: str
    ahead_by: int = Field(default=0, ge=0)
    behind_by: int = Field(default=0, ge=0)
    status: str = "identical"
    files: list[ChangedFile] = Field(default_factory=list)
    overlapping_files: list[str] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def has_conflicts(self) -> bool:
        return self.behind_by > 0

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]


# ---------------------------------------------------------------------------
# Task record
# ---------------------------------------------------------------------------


class TaskStats(BaseModel):
    lines_changed: int = 0
    steps_executed: int = 0
    steps_skipped: int = 0
    changes_proposed: int = 0
    changes_rejected: int = 0
    files_fetched: int = 0


class TaskMetadata(BaseModel):
    """Free-form-ish metadata persisted as JSONB next to the task row."""

    model_config = ConfigDict(extra="allow")

    repo: RepoRef | None = None
    files: list[InputFile] = Field(default_factory=list)
    additional_context: str | None = None
    auto_apply: bool = False
    trigger: dict[str, Any] | None = None
    basis_sha: str | None = None
    plan: Plan | None = None
    generated_changes: list[GeneratedChange] = Field(default_factory=list)
    stats: TaskStats = Field(default_factory=TaskStats)
    warnings: list[str] = Field(default_factory=list)
    github_token_used: bool = False
    auto_apply_result: CommitResult | None = None
    conflict_report: ConflictReport | None = None


class Task(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    instruction: str
    status: TaskStatus = TaskStatus.pending
    result: str | None = None
    error: str | None = None
    metadata: TaskMetadata = Field(default_factory=TaskMetadata)
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_request(cls, request: TaskRequest) -> "Task":
        return cls(
            instruction=request.instruction,
            metadata=TaskMetadata(
                repo=request.repo,
                files=list(request.files),
                additional_context=request.additional_context,
                auto_apply=request.auto_apply,
                trigger=request.trigger,
            ),
        )

    def _transition(self, new: TaskStatus) -> None:
        if new not in _ALLOWED_TRANSITIONS[self.status]:
            raise TaskStateError(
                f"Task {self.id} cannot move from {self.status.value} to {new.value}"
            )
        self.status = new

    def mark_processing(self) -> None:
        self._transition(TaskStatus.processing)
        self.started_at = _utcnow()

    def mark_completed(self, result: str) -> None:
        self._transition(TaskStatus.completed)
        self.result = result
        self.completed_at = _utcnow()

    def mark_failed(self, error: str) -> None:
        self._transition(TaskStatus.failed)
        self.error = error
        self.completed_at = _utcnow()


class TaskResult(BaseModel):
    """What ``TaskOrchestrator.run`` hands back to its caller."""

    task_id: UUID
    status: TaskStatus
    summary: str | None = None
    error: str | None = None
    plan: Plan | None = None
    generated_changes: list[GeneratedChange] = Field(default_factory=list)
    stats: TaskStats = Field(default_factory=TaskStats)
    warnings: list[str] = Field(default_factory=list)
    commit_result: CommitResult | None = None
    conflict_report: ConflictReport | None = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskResult":
        meta = task.metadata
        return cls(
            task_id=task.id,
            status=task.status,
            summary=task.result,
            error=task.error,
            plan=meta.plan,
            generated_changes=list(meta.generated_changes),
            stats=meta.stats,
            warnings=list(meta.warnings),
            commit_result=meta.auto_apply_result,
            conflict_report=meta.conflict_report,
        )
