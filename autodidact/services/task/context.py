"""Per-run state threaded through every orchestrator operation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from autodidact.services.task.models import GeneratedChange, RepoRef, Task, TaskStats
from autodidact.services.task.overlay import FileOverlay

logger = logging.getLogger(__name__)


@dataclass
class TaskContext:
    """Everything one task run owns.

    Nothing here is shared between runs: a fresh context (and overlay) is
    built for every :meth:`TaskOrchestrator.run` call.
    """

    task: Task
    access_token: str | None
    overlay: FileOverlay = field(default_factory=FileOverlay)
    knowledge: list[dict] = field(default_factory=list)
    basis_sha: str | None = None
    changes: list[GeneratedChange] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    stats: TaskStats = field(default_factory=TaskStats)
    # Index of the step currently executing.
    cursor: int = 0

    @property
    def repo(self) -> RepoRef | None:
        return self.task.metadata.repo

    @property
    def read_ref(self) -> str | None:
        """Ref every file read uses: the basis commit, else the branch."""
        if self.basis_sha:
            return self.basis_sha
        return self.repo.branch if self.repo else None

    def warn(self, message: str) -> None:
        logger.warning("Task %s: %s", self.task.id, message)
        self.warnings.append(message)

    def sync_metadata(self) -> None:
        """Copy accumulated run state into the task's metadata."""
        meta = self.task.metadata
        meta.basis_sha = self.basis_sha
        meta.generated_changes = list(self.changes)
        self.stats.files_fetched = self.overlay.fetch_count
        meta.stats = self.stats.model_copy()
        meta.warnings = list(self.warnings)
