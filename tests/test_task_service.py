"""Tests for the task service -- create, run, background start and outcome recording."""

import asyncio
import json
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from autodidact.errors import NotFoundError, TaskStateError
from autodidact.services import task_service
from autodidact.services.task.conflicts import ConflictDetector
from autodidact.services.task.models import RepoRef, TaskRequest, TaskStatus
from autodidact.services.task.orchestrator import TaskOrchestrator
from autodidact.services.task.store import InMemoryTaskStore


def _scripted_orchestrator(store, remote, changes):
    async def planner(payload):
        return json.dumps({"summary": "Tidy up", "steps": [{"title": "one"}, {"title": "two"}]})

    replies = [json.dumps({"changes": changes}), '{"changes": []}']

    async def synthesizer(payload):
        return replies.pop(0)

    return TaskOrchestrator(planner, synthesizer, store=store, client=remote)


def _request(**kw) -> TaskRequest:
    return TaskRequest(instruction="tidy", repo=RepoRef(owner="octocat", name="hello-world"), **kw)


def test_memory_store_selected_from_settings():
    assert isinstance(task_service.get_store(), InMemoryTaskStore)


@pytest.mark.asyncio
async def test_create_task_persists_pending_with_log():
    task = await task_service.create_task(_request(auto_apply=True))

    stored = await task_service.get_task(task.id)
    assert stored.status == TaskStatus.pending
    assert stored.metadata.auto_apply is True
    logs = await task_service.get_task_logs(task.id)
    assert logs[0]["message"] == "Task created"


@pytest.mark.asyncio
async def test_get_task_missing_raises_not_found():
    with pytest.raises(NotFoundError):
        await task_service.get_task(uuid4())
    with pytest.raises(NotFoundError):
        await task_service.get_task_logs(uuid4())


@pytest.mark.asyncio
async def test_run_task_records_outcome_and_metrics(remote):
    remote.seed({"a.py": "1"})
    store = task_service.get_store()
    task = await task_service.create_task(_request())
    orch = _scripted_orchestrator(store, remote, [
        {"path": "a.py", "action": "update", "new_content": "1\n2\n3"},
    ])

    with patch.object(task_service, "build_orchestrator", return_value=orch):
        result = await task_service.run_task(task.id, "tok")

    assert result.status == TaskStatus.completed
    assert store.metrics["lines_changed"] == 2
    assert store.metrics["ai_decisions"] == 2
    assert store.metrics["knowledge_nodes"] == 1
    node = store.knowledge[0]
    assert node["title"] == "Tidy up"
    assert node["repo_full_name"] == "octocat/hello-world"
    assert "new_content" not in node["content"]["changes"][0]


@pytest.mark.asyncio
async def test_run_without_changes_records_metrics_only(remote):
    remote.seed({})
    store = task_service.get_store()
    task = await task_service.create_task(_request())

    with patch.object(task_service, "build_orchestrator", return_value=_scripted_orchestrator(store, remote, [])):
        await task_service.run_task(task.id, "tok")

    assert store.knowledge == []
    assert store.metrics["tasks_completed"] == 1
    assert store.metrics["knowledge_nodes"] == 0


@pytest.mark.asyncio
async def test_failed_task_records_nothing(remote):
    store = task_service.get_store()
    task = await task_service.create_task(_request())

    async def planner(payload):
        return "no plan"

    orch = TaskOrchestrator(planner, AsyncMock(), store=store, client=remote)
    with patch.object(task_service, "build_orchestrator", return_value=orch):
        result = await task_service.run_task(task.id, None)

    assert result.status == TaskStatus.failed
    assert store.metrics["tasks_completed"] == 0


@pytest.mark.asyncio
async def test_outcome_recording_failure_is_not_fatal(remote):
    remote.seed({})
    store = task_service.get_store()
    store.record_metrics = AsyncMock(side_effect=RuntimeError("db down"))
    task = await task_service.create_task(_request())

    with patch.object(task_service, "build_orchestrator", return_value=_scripted_orchestrator(store, remote, [])):
        result = await task_service.run_task(task.id, "tok")

    assert result.status == TaskStatus.completed


@pytest.mark.asyncio
async def test_finished_task_cannot_run_again(remote):
    remote.seed({})
    store = task_service.get_store()
    task = await task_service.create_task(_request())
    with patch.object(task_service, "build_orchestrator", return_value=_scripted_orchestrator(store, remote, [])):
        await task_service.run_task(task.id, "tok")

    with pytest.raises(TaskStateError):
        await task_service.run_task(task.id, "tok")


@pytest.mark.asyncio
async def test_start_task_runs_in_background(remote):
    remote.seed({})
    store = task_service.get_store()
    task = await task_service.create_task(_request())
    gate = asyncio.Event()

    async def planner(payload):
        await gate.wait()
        return json.dumps({"steps": [{"title": "one"}]})

    async def synthesizer(payload):
        return '{"changes": []}'

    orch = TaskOrchestrator(planner, synthesizer, store=store, client=remote)
    with patch.object(task_service, "build_orchestrator", return_value=orch):
        started = await task_service.start_task(task.id, "tok")
        assert started.status == TaskStatus.pending
        assert task_service.is_running(task.id)

        with pytest.raises(TaskStateError):
            await task_service.start_task(task.id, "tok")

        gate.set()
        result = await task_service._active_tasks[str(task.id)]
        await asyncio.sleep(0)

    assert result.status == TaskStatus.completed
    assert not task_service.is_running(task.id)
    assert (await task_service.get_task(task.id)).status == TaskStatus.completed


@pytest.mark.asyncio
async def test_shutdown_all_cancels_background_runs(remote):
    store = task_service.get_store()
    task = await task_service.create_task(_request())

    async def planner(payload):
        await asyncio.Event().wait()

    orch = TaskOrchestrator(planner, AsyncMock(), store=store, client=remote)
    remote.seed({})
    with patch.object(task_service, "build_orchestrator", return_value=orch):
        await task_service.start_task(task.id, "tok")
        await asyncio.sleep(0)
        await task_service.shutdown_all()

    assert not task_service.is_running(task.id)


@pytest.mark.asyncio
async def test_list_tasks_filters_by_status():
    a = await task_service.create_task(_request())
    await task_service.create_task(TaskRequest(instruction="other"))

    pending = await task_service.list_tasks(status=TaskStatus.pending)
    scoped = await task_service.list_tasks(repo_full_name="octocat/hello-world")

    assert len(pending) == 2
    assert [t.id for t in scoped] == [a.id]


@pytest.mark.asyncio
async def test_check_conflicts_uses_detector(remote):
    basis = remote.seed({})
    remote.push({"x": "1"})

    def detector(token, repo):
        return ConflictDetector(token, repo, client=remote)

    with patch.object(task_service, "ConflictDetector", side_effect=detector):
        report = await task_service.check_conflicts(
            RepoRef(owner="octocat", name="hello-world"), "main", basis, "tok",
        )

    assert report.behind_by == 1
    assert report.has_conflicts
