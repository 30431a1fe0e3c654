"""Task persistence seam.

The orchestrator and the task service only talk to a :class:`TaskStore`.
``PostgresTaskStore`` delegates to the repos; ``InMemoryTaskStore`` keeps
everything in process (``TASK_STORE=memory`` and the test suite).
"""

from __future__ import annotations

import itertools
import json
from datetime import datetime, timezone
from typing import Protocol
from uuid import UUID

from autodidact.repos import knowledge_repo, metrics_repo, task_repo
from autodidact.services.task.models import Task, TaskMetadata, TaskStatus


class TaskStore(Protocol):
    async def create(self, task: Task) -> Task: ...

    async def get(self, task_id: UUID) -> Task | None: ...

    async def list_tasks(
        self,
        *,
        status: str | None = None,
        repo_full_name: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Task]: ...

    async def save(self, task: Task) -> None: ...

    async def append_log(
        self,
        task_id: UUID,
        message: str,
        *,
        source: str = "agent",
        level: str = "info",
        metadata: dict | None = None,
    ) -> None: ...

    async def get_logs(self, task_id: UUID, limit: int = 200, offset: int = 0) -> list[dict]: ...

    async def recent_knowledge(self, repo_full_name: str | None, limit: int) -> list[dict]: ...

    async def record_outcome(
        self, task_id: UUID, repo_full_name: str | None, title: str, content: dict,
    ) -> None: ...

    async def record_metrics(
        self, lines_changed: int, ai_decisions: int, knowledge_delta: int,
    ) -> None: ...


def task_from_row(row: dict) -> Task:
    return Task(
        id=row["id"],
        instruction=row["instruction"],
        status=TaskStatus(row["status"]),
        result=row.get("result"),
        error=row.get("error"),
        metadata=TaskMetadata.model_validate(row.get("metadata") or {}),
        created_at=row["created_at"],
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
    )


def _metadata_json(task: Task) -> dict:
    return task.metadata.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Postgres
# ---------------------------------------------------------------------------


class PostgresTaskStore:
    async def create(self, task: Task) -> Task:
        row = await task_repo.create_task(
            task.id,
            task.instruction,
            _metadata_json(task),
            status=task.status.value,
            created_at=task.created_at,
        )
        return task_from_row(row)

    async def get(self, task_id: UUID) -> Task | None:
        row = await task_repo.get_task(task_id)
        return task_from_row(row) if row else None

    async def list_tasks(self, *, status=None, repo_full_name=None, limit=50, offset=0) -> list[Task]:
        rows = await task_repo.list_tasks(
            status=status, repo_full_name=repo_full_name, limit=limit, offset=offset,
        )
        return [task_from_row(r) for r in rows]

    async def save(self, task: Task) -> None:
        await task_repo.save_task(
            task.id,
            status=task.status.value,
            result=task.result,
            error=task.error,
            metadata=_metadata_json(task),
            started_at=task.started_at,
            completed_at=task.completed_at,
        )

    async def append_log(self, task_id, message, *, source="agent", level="info", metadata=None) -> None:
        await task_repo.append_task_log(task_id, message, source, level, metadata)

    async def get_logs(self, task_id: UUID, limit: int = 200, offset: int = 0) -> list[dict]:
        return await task_repo.get_task_logs(task_id, limit, offset)

    async def recent_knowledge(self, repo_full_name: str | None, limit: int) -> list[dict]:
        return await knowledge_repo.list_recent_knowledge(repo_full_name, limit)

    async def record_outcome(self, task_id, repo_full_name, title, content) -> None:
        await knowledge_repo.record_outcome(task_id, repo_full_name, title, content)

    async def record_metrics(self, lines_changed, ai_decisions, knowledge_delta) -> None:
        await metrics_repo.record_task_metrics(lines_changed, ai_decisions, knowledge_delta)


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryTaskStore:
    """Process-local store.  Tasks are copied on the way in and out."""

    def __init__(self) -> None:
        self.tasks: dict[UUID, Task] = {}
        self.logs: dict[UUID, list[dict]] = {}
        self.knowledge: list[dict] = []
        self.metrics = {
            "lines_changed": 0,
            "tasks_completed": 0,
            "ai_decisions": 0,
            "knowledge_nodes": 0,
        }
        self._log_ids = itertools.count(1)

    async def create(self, task: Task) -> Task:
        self.tasks[task.id] = task.model_copy(deep=True)
        return task

    async def get(self, task_id: UUID) -> Task | None:
        task = self.tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def list_tasks(self, *, status=None, repo_full_name=None, limit=50, offset=0) -> list[Task]:
        tasks = sorted(self.tasks.values(), key=lambda t: t.created_at, reverse=True)
        if status:
            tasks = [t for t in tasks if t.status.value == status]
        if repo_full_name:
            tasks = [
                t for t in tasks
                if t.metadata.repo and t.metadata.repo.full_name == repo_full_name
            ]
        return [t.model_copy(deep=True) for t in tasks[offset:offset + limit]]

    async def save(self, task: Task) -> None:
        self.tasks[task.id] = task.model_copy(deep=True)

    async def append_log(self, task_id, message, *, source="agent", level="info", metadata=None) -> None:
        self.logs.setdefault(task_id, []).append({
            "id": next(self._log_ids),
            "task_id": task_id,
            "source": source,
            "level": level,
            "message": message,
            "metadata": json.loads(json.dumps(metadata or {}, default=str)),
            "created_at": datetime.now(timezone.utc),
        })

    async def get_logs(self, task_id: UUID, limit: int = 200, offset: int = 0) -> list[dict]:
        return list(self.logs.get(task_id, []))[offset:offset + limit]

    async def recent_knowledge(self, repo_full_name: str | None, limit: int) -> list[dict]:
        nodes = [
            n for n in reversed(self.knowledge)
            if repo_full_name is None or n["repo_full_name"] == repo_full_name
        ]
        return [{"title": n["title"], "content": json.dumps(n["content"])} for n in nodes[:limit]]

    async def record_outcome(self, task_id, repo_full_name, title, content) -> None:
        self.knowledge.append({
            "task_id": task_id,
            "repo_full_name": repo_full_name,
            "title": title,
            "content": content,
        })

    async def record_metrics(self, lines_changed, ai_decisions, knowledge_delta) -> None:
        self.metrics["lines_changed"] += lines_changed
        self.metrics["tasks_completed"] += 1
        self.metrics["ai_decisions"] += ai_decisions
        self.metrics["knowledge_nodes"] += knowledge_delta
