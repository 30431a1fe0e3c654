"""Knowledge repository -- outcome notes from completed tasks.

The most recent nodes for a repository are handed to the planner and the
synthesizer as context snippets.
"""

import json
from uuid import UUID

from autodidact.repos.db import get_pool


async def list_recent_knowledge(repo_full_name: str | None, limit: int = 8) -> list[dict]:
    """Newest knowledge nodes for a repository (all repositories when None)."""
    if limit <= 0:
        return []
    pool = await get_pool()
    if repo_full_name:
        rows = await pool.fetch(
            """
            SELECT title, content FROM knowledge_nodes
            WHERE repo_full_name = $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            repo_full_name,
            limit,
        )
    else:
        rows = await pool.fetch(
            "SELECT title, content FROM knowledge_nodes ORDER BY created_at DESC LIMIT $1",
            limit,
        )
    return [{"title": r["title"], "content": r["content"]} for r in rows]


async def record_outcome(
    task_id: UUID,
    repo_full_name: str | None,
    title: str,
    content: dict,
    *,
    category: str = "agent_outcome",
    confidence_score: int = 85,
) -> dict:
    """Store an outcome node for a completed task."""
    pool = await get_pool()
    row = await pool.fetchrow(
        """
        INSERT INTO knowledge_nodes (task_id, repo_full_name, title, content, category, confidence_score)
        VALUES ($1, $2, $3, $4, $5, $6)
        RETURNING id, task_id, repo_full_name, title, category, confidence_score, created_at
        """,
        task_id,
        repo_full_name,
        title,
        json.dumps(content),
        category,
        confidence_score,
    )
    return dict(row)
