"""Tests for the task, knowledge and metrics repositories (pool mocked)."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from autodidact.repos import knowledge_repo, metrics_repo, task_repo

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _pool(**methods):
    pool = MagicMock()
    for name, value in methods.items():
        setattr(pool, name, AsyncMock(return_value=value))
    return pool


def _task_row(task_id, **over):
    row = {
        "id": task_id,
        "instruction": "do",
        "status": "pending",
        "result": None,
        "error": None,
        "metadata": json.dumps({"auto_apply": True}),
        "created_at": NOW,
        "started_at": None,
        "completed_at": None,
    }
    row.update(over)
    return row


@pytest.mark.asyncio
async def test_create_task_serializes_metadata():
    task_id = uuid4()
    pool = _pool(fetchrow=_task_row(task_id))
    with patch("autodidact.repos.task_repo.get_pool", new=AsyncMock(return_value=pool)):
        row = await task_repo.create_task(task_id, "do", {"auto_apply": True}, created_at=NOW)

    assert row["metadata"] == {"auto_apply": True}
    args = pool.fetchrow.call_args.args
    assert "INSERT INTO tasks" in args[0]
    assert args[1:] == (task_id, "do", "pending", '{"auto_apply": true}', NOW)


@pytest.mark.asyncio
async def test_get_task_missing_returns_none():
    pool = _pool(fetchrow=None)
    with patch("autodidact.repos.task_repo.get_pool", new=AsyncMock(return_value=pool)):
        assert await task_repo.get_task(uuid4()) is None


@pytest.mark.asyncio
async def test_list_tasks_builds_filters():
    pool = _pool(fetch=[])
    with patch("autodidact.repos.task_repo.get_pool", new=AsyncMock(return_value=pool)):
        await task_repo.list_tasks(status="failed", repo_full_name="o/r", limit=5, offset=10)

    query, *params = pool.fetch.call_args.args
    assert "status = $1" in query
    assert "metadata->'repo'->>'owner' = $2" in query
    assert "LIMIT $4 OFFSET $5" in query
    assert params == ["failed", "o", "r", 5, 10]


@pytest.mark.asyncio
async def test_save_task_reports_missing_row():
    pool = _pool(execute="UPDATE 0")
    with patch("autodidact.repos.task_repo.get_pool", new=AsyncMock(return_value=pool)):
        saved = await task_repo.save_task(
            uuid4(), status="completed", result="ok", error=None,
            metadata={}, started_at=NOW, completed_at=NOW,
        )

    assert saved is False


@pytest.mark.asyncio
async def test_interrupt_stale_tasks_counts_rows():
    pool = _pool(execute="UPDATE 3")
    with patch("autodidact.repos.task_repo.get_pool", new=AsyncMock(return_value=pool)):
        assert await task_repo.interrupt_stale_tasks() == 3

    assert "status = 'processing'" in pool.execute.call_args.args[0]


@pytest.mark.asyncio
async def test_append_and_get_task_logs():
    task_id = uuid4()
    log_row = {
        "id": 1, "task_id": task_id, "source": "ai", "level": "info",
        "message": "hi", "metadata": '{"k": 1}', "created_at": NOW,
    }
    pool = _pool(fetchrow=log_row, fetch=[log_row])
    with patch("autodidact.repos.task_repo.get_pool", new=AsyncMock(return_value=pool)):
        entry = await task_repo.append_task_log(task_id, "hi", "ai", "info", {"k": 1})
        entries = await task_repo.get_task_logs(task_id, 10, 0)

    assert entry["metadata"] == {"k": 1}
    assert entries[0]["message"] == "hi"
    assert pool.fetch.call_args.args[1:] == (task_id, 10, 0)


@pytest.mark.asyncio
async def test_recent_knowledge_scoped_to_repo():
    pool = _pool(fetch=[{"title": "t", "content": "{}"}])
    with patch("autodidact.repos.knowledge_repo.get_pool", new=AsyncMock(return_value=pool)):
        nodes = await knowledge_repo.list_recent_knowledge("o/r", 3)

    assert nodes == [{"title": "t", "content": "{}"}]
    assert pool.fetch.call_args.args[1:] == ("o/r", 3)


@pytest.mark.asyncio
async def test_recent_knowledge_zero_limit_skips_query():
    with patch("autodidact.repos.knowledge_repo.get_pool", new=AsyncMock()) as get_pool:
        assert await knowledge_repo.list_recent_knowledge("o/r", 0) == []
    get_pool.assert_not_awaited()


@pytest.mark.asyncio
async def test_record_outcome_stores_json_content():
    task_id = uuid4()
    pool = _pool(fetchrow={"id": uuid4(), "task_id": task_id})
    with patch("autodidact.repos.knowledge_repo.get_pool", new=AsyncMock(return_value=pool)):
        await knowledge_repo.record_outcome(task_id, "o/r", "title", {"changes": []})

    args = pool.fetchrow.call_args.args
    assert args[1:] == (task_id, "o/r", "title", '{"changes": []}', "agent_outcome", 85)


@pytest.mark.asyncio
async def test_record_task_metrics_upserts():
    pool = _pool(fetchrow={"scope": "global", "tasks_completed": 1})
    with patch("autodidact.repos.metrics_repo.get_pool", new=AsyncMock(return_value=pool)):
        row = await metrics_repo.record_task_metrics(12, 2, 1)

    assert row["scope"] == "global"
    query, *params = pool.fetchrow.call_args.args
    assert "ON CONFLICT (scope) DO UPDATE" in query
    assert params == ["global", 12, 2, 1, 92, 75]
