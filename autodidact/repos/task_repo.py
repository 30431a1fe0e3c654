"""Task repository -- database reads and writes for the tasks and task_logs tables."""

import json
from datetime import datetime, timezone
from uuid import UUID

from autodidact.repos.db import get_pool

_TASK_COLUMNS = """
    id, instruction, status, result, error, metadata,
    created_at, started_at, completed_at
"""


def _row_to_dict(row) -> dict:
    data = dict(row)
    # asyncpg hands JSONB back as text unless a codec is registered.
    if isinstance(data.get("metadata"), str):
        data["metadata"] = json.loads(data["metadata"])
    return data


def _count(result: str) -> int:
    # asyncpg returns "UPDATE N" as a string
    try:
        return int(result.split()[-1])
    except (ValueError, IndexError):
        return 0


# ---------------------------------------------------------------------------
# tasks
# ---------------------------------------------------------------------------


async def create_task(
    task_id: UUID,
    instruction: str,
    metadata: dict,
    *,
    status: str = "pending",
    created_at: datetime | None = None,
) -> dict:
    """Insert a new task row."""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"""
        INSERT INTO tasks (id, instruction, status, metadata, created_at)
        VALUES ($1, $2, $3, $4::jsonb, $5)
        RETURNING {_TASK_COLUMNS}
        """,
        task_id,
        instruction,
        status,
        json.dumps(metadata),
        created_at or datetime.now(timezone.utc),
    )
    return _row_to_dict(row)


async def get_task(task_id: UUID) -> dict | None:
    """Fetch a single task by ID."""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = $1",
        task_id,
    )
    return _row_to_dict(row) if row else None


async def list_tasks(
    *,
    status: str | None = None,
    repo_full_name: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict]:
    """List tasks, newest first, optionally filtered by status or repository."""
    pool = await get_pool()
    where = ["TRUE"]
    params: list = []
    if status:
        params.append(status)
        where.append(f"status = ${len(params)}")
    if repo_full_name:
        owner, _, name = repo_full_name.partition("/")
        params.extend([owner, name])
        where.append(
            f"metadata->'repo'->>'owner' = ${len(params) - 1} "
            f"AND metadata->'repo'->>'name' = ${len(params)}"
        )
    params.extend([limit, offset])
    rows = await pool.fetch(
        f"""
        SELECT {_TASK_COLUMNS} FROM tasks
        WHERE {' AND '.join(where)}
        ORDER BY created_at DESC
        LIMIT ${len(params) - 1} OFFSET ${len(params)}
        """,
        *params,
    )
    return [_row_to_dict(r) for r in rows]


async def save_task(
    task_id: UUID,
    *,
    status: str,
    result: str | None,
    error: str | None,
    metadata: dict,
    started_at: datetime | None,
    completed_at: datetime | None,
) -> bool:
    """Replace the mutable columns of a task.  Returns False if the row is gone."""
    pool = await get_pool()
    outcome = await pool.execute(
        """
        UPDATE tasks
           SET status       = $2,
               result       = $3,
               error        = $4,
               metadata     = $5::jsonb,
               started_at   = $6,
               completed_at = $7
         WHERE id = $1
        """,
        task_id,
        status,
        result,
        error,
        json.dumps(metadata),
        started_at,
        completed_at,
    )
    return _count(outcome) > 0


async def interrupt_stale_tasks() -> int:
    """Fail tasks left processing by a previous server instance.

    Called once during startup; the in-process task that owned them is
    gone.  Returns the number of tasks marked failed.
    """
    pool = await get_pool()
    outcome = await pool.execute(
        """
        UPDATE tasks
           SET status       = 'failed',
               error        = 'Interrupted by server restart',
               completed_at = $1
         WHERE status = 'processing'
        """,
        datetime.now(timezone.utc),
    )
    return _count(outcome)


# ---------------------------------------------------------------------------
# task_logs
# ---------------------------------------------------------------------------


async def append_task_log(
    task_id: UUID,
    message: str,
    source: str = "agent",
    level: str = "info",
    metadata: dict | None = None,
) -> dict:
    """Append one activity entry to a task."""
    pool = await get_pool()
    row = await pool.fetchrow(
        """
        INSERT INTO task_logs (task_id, source, level, message, metadata)
        VALUES ($1, $2, $3, $4, $5::jsonb)
        RETURNING id, task_id, source, level, message, metadata, created_at
        """,
        task_id,
        source,
        level,
        message,
        json.dumps(metadata or {}),
    )
    return _row_to_dict(row)


async def get_task_logs(task_id: UUID, limit: int = 200, offset: int = 0) -> list[dict]:
    """Fetch a task's activity entries, oldest first."""
    pool = await get_pool()
    rows = await pool.fetch(
        """
        SELECT id, task_id, source, level, message, metadata, created_at
        FROM task_logs WHERE task_id = $1
        ORDER BY created_at ASC, id ASC
        LIMIT $2 OFFSET $3
        """,
        task_id,
        limit,
        offset,
    )
    return [_row_to_dict(r) for r in rows]
