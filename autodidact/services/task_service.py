"""Task service -- create, run and inspect AI tasks.

Tasks run either inline (``run_task``) or as background asyncio tasks
(``start_task``).  Independent tasks may run concurrently, even on the
same branch; nothing here serialises them.  The branch ref fast-forward
check in the commit builder is the only guard against a stale commit.

No SQL, no HTTP framework.
"""

import asyncio
import logging
from uuid import UUID

from autodidact.config import settings
from autodidact.errors import NotFoundError, TaskStateError
from autodidact.services.task.conflicts import ConflictDetector
from autodidact.services.task.models import (
    ConflictReport,
    RepoRef,
    Task,
    TaskRequest,
    TaskResult,
    TaskStatus,
)
from autodidact.services.task.orchestrator import TaskOrchestrator
from autodidact.services.task.store import InMemoryTaskStore, PostgresTaskStore, TaskStore
from autodidact.services.task.synthesis import LLMPlanner, LLMStepSynthesizer

logger = logging.getLogger(__name__)

# Background runs keyed by task id; entries remove themselves when done.
_active_tasks: dict[str, asyncio.Task] = {}

_store: TaskStore | None = None


def get_store() -> TaskStore:
    """Return the process-wide task store, creating it from settings."""
    global _store
    if _store is None:
        _store = InMemoryTaskStore() if settings.TASK_STORE == "memory" else PostgresTaskStore()
    return _store


def set_store(store: TaskStore | None) -> None:
    """Replace the process-wide store (None resets to the configured one)."""
    global _store
    _store = store


def build_orchestrator(store: TaskStore) -> TaskOrchestrator:
    return TaskOrchestrator(LLMPlanner(), LLMStepSynthesizer(), store=store)


# ---------------------------------------------------------------------------
# Create / run
# ---------------------------------------------------------------------------


async def create_task(request: TaskRequest) -> Task:
    """Persist a new pending task."""
    task = Task.from_request(request)
    store = get_store()
    await store.create(task)
    await _log_best_effort(store, task.id, "Task created", metadata={
        "repo": request.repo.full_name if request.repo else None,
        "auto_apply": request.auto_apply,
        "trigger": request.trigger,
    })
    logger.info("Created task %s (repo=%s)", task.id, request.repo.full_name if request.repo else "-")
    return task


async def _load_pending(task_id: UUID) -> Task:
    task = await get_task(task_id)
    if task.status != TaskStatus.pending:
        raise TaskStateError(f"Task {task_id} is {task.status.value}, not pending")
    if str(task_id) in _active_tasks:
        raise TaskStateError(f"Task {task_id} is already running")
    return task


async def run_task(task_id: UUID, access_token: str | None = None) -> TaskResult:
    """Run a pending task to completion and return its result."""
    task = await _load_pending(task_id)
    return await _execute(task, access_token)


async def start_task(task_id: UUID, access_token: str | None = None) -> Task:
    """Run a pending task in the background.  Returns the task as it is now."""
    task = await _load_pending(task_id)
    key = str(task_id)
    bg = asyncio.create_task(_execute(task, access_token), name=f"task-{key}")
    _active_tasks[key] = bg
    bg.add_done_callback(lambda t, k=key: _on_background_done(k, t))
    return task


def _on_background_done(key: str, bg: asyncio.Task) -> None:
    _active_tasks.pop(key, None)
    if bg.cancelled():
        logger.warning("Background task %s was cancelled", key)
        return
    exc = bg.exception()
    if exc is not None:
        logger.error("Background task %s crashed: %s", key, exc, exc_info=exc)


async def _execute(task: Task, access_token: str | None) -> TaskResult:
    store = get_store()
    orchestrator = build_orchestrator(store)
    result = await orchestrator.run(task, access_token)
    if result.status == TaskStatus.completed:
        await _record_outcome(store, task, result)
    return result


async def _record_outcome(store: TaskStore, task: Task, result: TaskResult) -> None:
    """Store the knowledge node and bump cumulative metrics.  Never raises."""
    has_changes = bool(result.generated_changes)
    repo = task.metadata.repo
    try:
        if has_changes:
            summary = (result.plan.summary if result.plan else "") or task.instruction
            await store.record_outcome(
                task.id,
                repo.full_name if repo else None,
                summary[:120],
                {
                    "instruction": task.instruction,
                    "summary": result.plan.summary if result.plan else "",
                    "changes": [
                        c.model_dump(mode="json", exclude={"new_content"})
                        for c in result.generated_changes
                    ],
                },
            )
        await store.record_metrics(
            result.stats.lines_changed,
            len(result.plan.steps) if result.plan else 0,
            1 if has_changes else 0,
        )
    except Exception as exc:
        logger.warning("Failed to record outcome for task %s (non-fatal): %s", task.id, exc)


async def _log_best_effort(store: TaskStore, task_id: UUID, message: str, **kw) -> None:
    try:
        await store.append_log(task_id, message, source="system", **kw)
    except Exception as exc:
        logger.warning("Failed to write task log for %s (non-fatal): %s", task_id, exc)


async def shutdown_all() -> None:
    """Cancel in-flight background runs and wait for them to unwind.

    An in-flight remote write may still land; the next startup marks the
    abandoned tasks failed.
    """
    for bg in list(_active_tasks.values()):
        bg.cancel()
    if _active_tasks:
        await asyncio.gather(*_active_tasks.values(), return_exceptions=True)
    _active_tasks.clear()


def is_running(task_id: UUID) -> bool:
    return str(task_id) in _active_tasks


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_task(task_id: UUID) -> Task:
    task = await get_store().get(task_id)
    if task is None:
        raise NotFoundError(f"Task {task_id} not found")
    return task


async def list_tasks(
    *,
    status: TaskStatus | None = None,
    repo_full_name: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Task]:
    return await get_store().list_tasks(
        status=status.value if status else None,
        repo_full_name=repo_full_name,
        limit=limit,
        offset=offset,
    )


async def get_task_logs(task_id: UUID, limit: int = 200, offset: int = 0) -> list[dict]:
    await get_task(task_id)
    return await get_store().get_logs(task_id, limit, offset)


async def check_conflicts(
    repo: RepoRef,
    base: str,
    head: str,
    access_token: str | None = None,
) -> ConflictReport:
    """Ahead/behind report for ``head`` relative to ``base``."""
    detector = ConflictDetector(access_token or "", repo)
    return await detector.compare(base, head)
