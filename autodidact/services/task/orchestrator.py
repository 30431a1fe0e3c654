"""TaskOrchestrator -- drives one task from instruction to (optional) commit.

Sequence for ``run(task)``:

1. pending -> processing; resolve the basis commit and seed the overlay
   with caller-provided files.
2. Planner, exactly once.  An unusable plan is fatal.
3. Steps, strictly one after another: each step sees the overlay as left
   by the previous ones.  An unparseable step reply makes that step a
   logged no-op; anything else escaping a step is fatal.
4. Auto-apply (if requested): conflict pre-check, then one atomic commit.
   The commit outcome is recorded but never fails the task.
5. processing -> completed, or -> failed with the metadata gathered so far.

No SQL, no HTTP framework.  Persistence goes through a :class:`TaskStore`,
remote access through the ``github_client`` functions (or a fake).
"""

from __future__ import annotations

import logging
from types import ModuleType
from typing import Any, Awaitable, Callable

from autodidact.clients import github_client
from autodidact.config import settings
from autodidact.errors import GitHubAPIError, SynthesisFailure
from autodidact.services.task.commit_builder import CommitBuilder, build_commit_message
from autodidact.services.task.conflicts import ConflictDetector, describe_conflict
from autodidact.services.task.context import TaskContext
from autodidact.services.task.contracts import (
    build_planner_input,
    build_step_input,
    parse_plan,
    parse_step_output,
)
from autodidact.services.task.models import (
    CommitResult,
    DeleteChange,
    GeneratedChange,
    Plan,
    Step,
    Task,
    TaskResult,
)
from autodidact.services.task.overlay import FileOverlay
from autodidact.services.task.store import TaskStore
from autodidact.services.task.synthesis import Planner, StepSynthesizer

logger = logging.getLogger(__name__)

ContextProvider = Callable[[Task], Awaitable[list[dict]]]

TOKEN_REQUIRED = "token required"
REPOSITORY_REQUIRED = "repository required"


class TaskOrchestrator:
    """Run tasks against a planner, a step synthesizer and a store.

    Args:
        planner: async ``payload -> raw text``.
        synthesizer: async ``payload -> raw text``.
        store: where task state and activity entries are written.
        context_provider: async ``task -> [{title, content}]`` snippets;
            defaults to the store's recent knowledge for the repository.
        client: remote repository primitives (``github_client`` or a fake).
    """

    def __init__(
        self,
        planner: Planner,
        synthesizer: StepSynthesizer,
        *,
        store: TaskStore,
        context_provider: ContextProvider | None = None,
        client: ModuleType | Any = github_client,
        planner_char_limit: int | None = None,
        step_char_limit: int | None = None,
    ) -> None:
        self._planner = planner
        self._synthesizer = synthesizer
        self._store = store
        self._context_provider = context_provider or self._recent_knowledge
        self._client = client
        self._planner_char_limit = (
            settings.PLANNER_FILE_CHAR_LIMIT if planner_char_limit is None else planner_char_limit
        )
        self._step_char_limit = (
            settings.STEP_FILE_CHAR_LIMIT if step_char_limit is None else step_char_limit
        )

    # ── entry point ──────────────────────────────────────────────────────

    async def run(self, task: Task, access_token: str | None = None) -> TaskResult:
        """Execute *task* end to end and return its final state.

        Raises:
            TaskStateError: if *task* is not pending.
        """
        task.mark_processing()
        task.metadata.github_token_used = bool(access_token)

        ctx = TaskContext(task=task, access_token=access_token)
        ctx.overlay = FileOverlay(self._make_fetcher(ctx), on_fetch=self._fetch_listener(ctx))

        try:
            await self._store.save(task)
            await self._prepare(ctx)
            plan = await self._plan(ctx)
            for index, step in enumerate(plan.steps):
                ctx.cursor = index
                await self._run_step(ctx, step)
                await self._checkpoint(ctx)
            ctx.sync_metadata()
            if task.metadata.auto_apply:
                await self._auto_apply(ctx, plan)
        except Exception as exc:
            ctx.sync_metadata()
            task.mark_failed(str(exc) or type(exc).__name__)
            logger.exception("Task %s failed", task.id)
            await self._log(ctx, f"Task failed: {task.error}", level="error", source="system")
            await self._save_final(task)
            return TaskResult.from_task(task)

        ctx.sync_metadata()
        task.mark_completed(plan.summary or "Task completed")
        await self._save_final(task)
        await self._log(
            ctx,
            "Agent task completed",
            source="system",
            metadata={
                "lines_changed": ctx.stats.lines_changed,
                "auto_apply": task.metadata.auto_apply,
            },
        )
        logger.info(
            "Task %s completed: %d change(s), %d line(s)",
            task.id, len(ctx.changes), ctx.stats.lines_changed,
        )
        return TaskResult.from_task(task)

    # ── phases ───────────────────────────────────────────────────────────

    async def _prepare(self, ctx: TaskContext) -> None:
        repo = ctx.repo
        if repo is not None:
            try:
                ctx.basis_sha = await self._client.get_branch_head(
                    ctx.access_token or "", repo.full_name, repo.branch,
                )
            except GitHubAPIError as exc:
                ctx.warn(f"Could not resolve head of {repo.branch}, reading at the branch: {exc}")

        for f in ctx.task.metadata.files:
            if f.content is not None:
                ctx.overlay.seed(f.path, f.content, f.sha)
            else:
                await ctx.overlay.ensure(f.path)

        try:
            ctx.knowledge = await self._context_provider(ctx.task)
        except Exception as exc:
            logger.warning("Context provider failed for task %s (non-fatal): %s", ctx.task.id, exc)
            ctx.knowledge = []

    async def _plan(self, ctx: TaskContext) -> Plan:
        meta = ctx.task.metadata
        payload = build_planner_input(
            instruction=ctx.task.instruction,
            repo=meta.repo,
            files=[{"path": f.path, "content": ctx.overlay.content_of(f.path)} for f in meta.files],
            knowledge=ctx.knowledge,
            hints=meta.additional_context,
            char_limit=self._planner_char_limit,
        )
        raw = await self._planner(payload)
        plan = parse_plan(raw, default_files=[f.path for f in meta.files])

        meta.plan = plan
        await self._log(
            ctx,
            f"Planning {len(plan.steps)} step(s)",
            source="ai",
            metadata={
                "summary": plan.summary,
                "steps": [{"id": s.id, "title": s.title} for s in plan.steps],
            },
        )
        await self._checkpoint(ctx)
        return plan

    async def _run_step(self, ctx: TaskContext, step: Step) -> None:
        await self._log(
            ctx, f"Executing step: {step.title}", source="ai",
            metadata={"step_id": step.id, "step_index": ctx.cursor},
        )
        ctx.stats.steps_executed += 1

        files = []
        for target in step.target_files:
            snapshot = await ctx.overlay.ensure(target.path)
            files.append({"path": target.path, "content": snapshot.content})

        payload = build_step_input(
            instruction=ctx.task.instruction,
            step=step,
            repo=ctx.repo,
            files=files,
            knowledge=ctx.knowledge,
            char_limit=self._step_char_limit,
        )
        raw = await self._synthesizer(payload)

        try:
            output, rejected = parse_step_output(raw)
        except SynthesisFailure as exc:
            ctx.stats.steps_skipped += 1
            ctx.warn(f"Step {step.id} ({step.title}) skipped: {exc}")
            await self._log(
                ctx, f"Skipped step: {step.title}", level="warning", source="ai",
                metadata={"step_id": step.id, "step_index": ctx.cursor, "reason": str(exc)},
            )
            return

        for reason in rejected:
            ctx.warn(f"Step {step.id}: {reason}")
        ctx.stats.changes_rejected += len(rejected)

        for change in output.changes:
            ctx.stats.changes_proposed += 1
            # Prior content must be loaded so the delta is against upstream.
            await ctx.overlay.ensure(change.path)
            delta = ctx.overlay.apply(change)
            ctx.stats.lines_changed += abs(delta)
            ctx.changes.append(GeneratedChange(
                path=change.path,
                action=change.action,
                step_id=step.id,
                step_title=step.title,
                line_delta=delta,
                summary=output.summary,
                description=change.description,
                language=change.language,
                new_content=None if isinstance(change, DeleteChange) else change.new_content,
            ))

        await self._log(
            ctx,
            f"Completed step: {step.title}",
            source="code",
            metadata={
                "step_id": step.id,
                "step_index": ctx.cursor,
                "summary": output.summary,
                "files_changed": [c.path for c in output.changes],
                "insights": output.insights,
            },
        )

    async def _auto_apply(self, ctx: TaskContext, plan: Plan) -> None:
        meta = ctx.task.metadata
        repo = ctx.repo
        if not ctx.access_token:
            result = CommitResult(attempted=True, success=False, error=TOKEN_REQUIRED)
        elif repo is None:
            result = CommitResult(attempted=True, success=False, error=REPOSITORY_REQUIRED)
        else:
            changes = ctx.overlay.pending_changes()
            if changes and ctx.basis_sha:
                await self._check_conflicts(ctx, [c.path for c in changes])

            message = build_commit_message(
                settings.COMMIT_MESSAGE_PREFIX,
                plan.summary,
                ctx.task.instruction,
                settings.COMMIT_MESSAGE_MAX_CHARS,
            )
            builder = CommitBuilder(ctx.access_token, repo, client=self._client)
            try:
                result = await builder.commit(changes, message)
            except Exception as exc:
                logger.exception("Commit phase for task %s crashed", ctx.task.id)
                result = CommitResult(attempted=True, success=False, error=str(exc))
            if result.success:
                ctx.overlay.mark_committed(result.changed_paths)

        meta.auto_apply_result = result
        if result.success:
            await self._log(
                ctx, result.message, source="git",
                metadata={"commit_sha": result.commit_sha, "commit_url": result.commit_url,
                          "files_committed": result.changed_paths},
            )
        elif result.skipped:
            await self._log(ctx, result.message, source="git")
        else:
            await self._log(
                ctx, f"Auto-apply failed: {result.error}", level="error", source="git",
                metadata={"conflict": result.conflict},
            )

    async def _check_conflicts(self, ctx: TaskContext, dirty_paths: list[str]) -> None:
        detector = ConflictDetector(ctx.access_token or "", ctx.repo, client=self._client)
        try:
            report = await detector.compare(ctx.repo.branch, ctx.basis_sha, dirty_paths)
        except Exception as exc:
            logger.warning("Conflict check for task %s failed (non-fatal): %s", ctx.task.id, exc)
            return
        ctx.task.metadata.conflict_report = report
        if report.has_conflicts:
            message = describe_conflict(report)
            ctx.warn(message)
            ctx.task.metadata.warnings = list(ctx.warnings)
            await self._log(
                ctx, message, level="warning", source="git",
                metadata={"behind_by": report.behind_by, "overlapping_files": report.overlapping_files},
            )

    # ── helpers ──────────────────────────────────────────────────────────

    def _make_fetcher(self, ctx: TaskContext):
        if ctx.repo is None:
            return None
        full_name = ctx.repo.full_name

        async def fetch(path: str):
            return await self._client.get_file_contents(
                ctx.access_token or "", full_name, path, ctx.read_ref,
            )

        return fetch

    def _fetch_listener(self, ctx: TaskContext):
        async def on_fetch(path: str, outcome: str, detail: str | None) -> None:
            if outcome == "fetched":
                await self._log(ctx, f"Fetched {path}", source="git", metadata={"sha": detail})
            elif outcome == "missing":
                await self._log(ctx, f"{path} not found upstream, will be created", source="git")
            else:
                ctx.warn(f"Could not fetch {path}, treating as new: {detail}")
                await self._log(
                    ctx, f"Fetch failed for {path}", level="warning", source="git",
                    metadata={"error": detail},
                )

        return on_fetch

    async def _recent_knowledge(self, task: Task) -> list[dict]:
        repo = task.metadata.repo
        return await self._store.recent_knowledge(
            repo.full_name if repo else None, settings.KNOWLEDGE_CONTEXT_LIMIT,
        )

    async def _log(
        self,
        ctx: TaskContext,
        message: str,
        *,
        level: str = "info",
        source: str = "agent",
        metadata: dict | None = None,
    ) -> None:
        """Append an activity entry.  Never raises."""
        try:
            await self._store.append_log(
                ctx.task.id, message, source=source, level=level, metadata=metadata,
            )
        except Exception as exc:
            logger.warning("Failed to write task log for %s (non-fatal): %s", ctx.task.id, exc)

    async def _save_final(self, task: Task) -> None:
        """Persist the terminal state.  A store failure is logged, not raised."""
        try:
            await self._store.save(task)
        except Exception:
            logger.exception(
                "Could not persist %s state for task %s", task.status.value, task.id,
            )

    async def _checkpoint(self, ctx: TaskContext) -> None:
        """Persist progress mid-run so readers see it.  Never raises."""
        ctx.sync_metadata()
        try:
            await self._store.save(ctx.task)
        except Exception as exc:
            logger.warning("Checkpoint save for task %s failed (non-fatal): %s", ctx.task.id, exc)
