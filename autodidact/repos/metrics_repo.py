"""Agent metrics repository -- cumulative counters across all tasks."""

from autodidact.repos.db import get_pool

_DEFAULT_AUTONOMY_LEVEL = 92
_DEFAULT_LEARNING_SCORE = 75


async def record_task_metrics(
    lines_changed: int,
    ai_decisions: int,
    knowledge_delta: int,
    *,
    scope: str = "global",
) -> dict:
    """Add one completed task's numbers to the running totals for *scope*."""
    pool = await get_pool()
    row = await pool.fetchrow(
        """
        INSERT INTO agent_metrics
            (scope, lines_changed, tasks_completed, ai_decisions, knowledge_nodes,
             autonomy_level, learning_score)
        VALUES ($1, $2, 1, $3, $4, $5, $6)
        ON CONFLICT (scope) DO UPDATE
           SET lines_changed   = agent_metrics.lines_changed + EXCLUDED.lines_changed,
               tasks_completed = agent_metrics.tasks_completed + 1,
               ai_decisions    = agent_metrics.ai_decisions + EXCLUDED.ai_decisions,
               knowledge_nodes = agent_metrics.knowledge_nodes + EXCLUDED.knowledge_nodes,
               updated_at      = now()
        RETURNING scope, lines_changed, tasks_completed, ai_decisions, knowledge_nodes,
                  autonomy_level, learning_score, updated_at
        """,
        scope,
        lines_changed,
        ai_decisions,
        knowledge_delta,
        _DEFAULT_AUTONOMY_LEVEL,
        _DEFAULT_LEARNING_SCORE,
    )
    return dict(row)


async def get_metrics(scope: str = "global") -> dict | None:
    pool = await get_pool()
    row = await pool.fetchrow(
        """
        SELECT scope, lines_changed, tasks_completed, ai_decisions, knowledge_nodes,
               autonomy_level, learning_score, updated_at
        FROM agent_metrics WHERE scope = $1
        """,
        scope,
    )
    return dict(row) if row else None
