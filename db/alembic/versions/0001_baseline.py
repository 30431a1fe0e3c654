"""Baseline schema: tasks, task_logs, knowledge_nodes, agent_metrics.

Revision ID: 0001_baseline
Revises: None
Create Date: 2026-10-18

Idempotent (IF NOT EXISTS everywhere) so it is safe on a database that
was created by hand from the same DDL.
"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_baseline"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    # -- tasks -----------------------------------------------------------------
    op.execute("""
        CREATE TABLE IF NOT EXISTS tasks (
            id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            instruction     TEXT NOT NULL,
            status          VARCHAR(20) NOT NULL DEFAULT 'pending'
                            CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
            result          TEXT,
            error           TEXT,
            metadata        JSONB NOT NULL DEFAULT '{}'::jsonb,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
            started_at      TIMESTAMPTZ,
            completed_at    TIMESTAMPTZ
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_tasks_created_at ON tasks(created_at DESC)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_tasks_repo "
        "ON tasks((metadata->'repo'->>'owner'), (metadata->'repo'->>'name'))"
    )

    # -- task_logs (activity trail) ------------------------------------------
    op.execute("""
        CREATE TABLE IF NOT EXISTS task_logs (
            id              BIGSERIAL PRIMARY KEY,
            task_id         UUID NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
            source          VARCHAR(20) NOT NULL DEFAULT 'agent',
            level           VARCHAR(10) NOT NULL DEFAULT 'info',
            message         TEXT NOT NULL,
            metadata        JSONB NOT NULL DEFAULT '{}'::jsonb,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_task_logs_task_id ON task_logs(task_id, created_at)"
    )

    # -- knowledge_nodes -------------------------------------------------------
    op.execute("""
        CREATE TABLE IF NOT EXISTS knowledge_nodes (
            id               UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            task_id          UUID REFERENCES tasks(id) ON DELETE SET NULL,
            repo_full_name   VARCHAR(500),
            title            VARCHAR(255) NOT NULL,
            content          TEXT NOT NULL,
            category         VARCHAR(50) NOT NULL DEFAULT 'agent_outcome',
            confidence_score INTEGER NOT NULL DEFAULT 85,
            usage_count      INTEGER NOT NULL DEFAULT 0,
            created_at       TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_knowledge_repo "
        "ON knowledge_nodes(repo_full_name, created_at DESC)"
    )

    # -- agent_metrics ---------------------------------------------------------
    op.execute("""
        CREATE TABLE IF NOT EXISTS agent_metrics (
            scope            VARCHAR(100) PRIMARY KEY,
            lines_changed    BIGINT NOT NULL DEFAULT 0,
            tasks_completed  INTEGER NOT NULL DEFAULT 0,
            ai_decisions     INTEGER NOT NULL DEFAULT 0,
            knowledge_nodes  INTEGER NOT NULL DEFAULT 0,
            autonomy_level   INTEGER NOT NULL DEFAULT 92,
            learning_score   INTEGER NOT NULL DEFAULT 75,
            updated_at       TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)


def downgrade() -> None:
    """Drop all application tables in reverse dependency order."""
    op.execute("DROP TABLE IF EXISTS agent_metrics CASCADE")
    op.execute("DROP TABLE IF EXISTS knowledge_nodes CASCADE")
    op.execute("DROP TABLE IF EXISTS task_logs CASCADE")
    op.execute("DROP TABLE IF EXISTS tasks CASCADE")
