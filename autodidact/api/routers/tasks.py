"""Tasks router -- create, run and inspect AI tasks."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from autodidact.api.deps import enforce_task_rate_limit, get_github_token
from autodidact.services import task_service
from autodidact.services.task.models import RepoRef, Task, TaskRequest, TaskStatus

router = APIRouter(tags=["tasks"])


def _task_view(task: Task) -> dict:
    data = task.model_dump(mode="json")
    data["running"] = task_service.is_running(task.id)
    return data


@router.post(
    "/tasks",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(enforce_task_rate_limit)],
)
async def create_task(
    body: TaskRequest,
    run: bool = Query(default=True, description="Start the task in the background"),
    token: str | None = Depends(get_github_token),
) -> dict:
    """Create a task; by default it starts running immediately."""
    task = await task_service.create_task(body)
    if run:
        task = await task_service.start_task(task.id, token)
    return _task_view(task)


@router.get("/tasks")
async def list_tasks(
    status_filter: TaskStatus | None = Query(default=None, alias="status"),
    repo: str | None = Query(default=None, description="owner/name"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> dict:
    tasks = await task_service.list_tasks(
        status=status_filter, repo_full_name=repo, limit=limit, offset=offset,
    )
    return {"items": [_task_view(t) for t in tasks]}


@router.get("/tasks/{task_id}")
async def get_task(task_id: UUID) -> dict:
    return _task_view(await task_service.get_task(task_id))


@router.get("/tasks/{task_id}/logs")
async def get_task_logs(
    task_id: UUID,
    limit: int = Query(default=200, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
) -> dict:
    logs = await task_service.get_task_logs(task_id, limit, offset)
    return {"items": logs}


@router.post("/tasks/{task_id}/run", status_code=status.HTTP_202_ACCEPTED)
async def run_task(
    task_id: UUID,
    token: str | None = Depends(get_github_token),
) -> dict:
    """Start a pending task in the background."""
    task = await task_service.start_task(task_id, token)
    return _task_view(task)


@router.get("/repos/{owner}/{name}/compare")
async def compare_refs(
    owner: str,
    name: str,
    base: str = Query(..., min_length=1),
    head: str = Query(..., min_length=1),
    token: str | None = Depends(get_github_token),
) -> dict:
    """Ahead/behind report for *head* relative to *base*."""
    report = await task_service.check_conflicts(RepoRef(owner=owner, name=name), base, head, token)
    return report.model_dump(mode="json")
