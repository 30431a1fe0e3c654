"""CommitBuilder: land a multi-file change-set as one atomic commit.

The remote offers no "push a working tree" shortcut, so the commit is
assembled from object primitives:

    head = get_branch_head(branch)          # 1  nothing touched yet
    base = get_commit_tree(head)            # 2  nothing touched yet
    blobs = [create_blob(c) for c in ...]   # 4  unreachable objects only
    tree  = create_tree(base, entries)      # 5-6
    commit = create_commit(tree, [head])    # 6
    update_ref(branch, commit)              # 7  the only visible mutation

Any failure before step 7 leaves the branch exactly as it was: blobs,
trees and commits that no ref points at are invisible to other readers.
Step 7 is a fast-forward update; if the branch moved after step 1 the
remote rejects it and the attempt is reported as a conflict, never
retried or forced.
"""

from __future__ import annotations

import logging
from types import ModuleType
from typing import Any

from autodidact.clients import github_client
from autodidact.errors import CommitAborted, CommitConflict, GitHubAPIError
from autodidact.services.task.codec import text_to_bytes
from autodidact.services.task.models import (
    Change,
    CommitResult,
    DeleteChange,
    RepoRef,
)

logger = logging.getLogger(__name__)

# Upstream statuses that mean "ref update is not a fast-forward".
_CONFLICT_STATUSES = frozenset({409, 422})


class CommitBuilder:
    """Build one commit on ``repo.branch`` from a list of changes.

    ``client`` is anything exposing the :mod:`github_client` primitive
    functions; tests pass an in-memory fake.
    """

    def __init__(
        self,
        access_token: str,
        repo: RepoRef,
        *,
        client: ModuleType | Any = github_client,
    ) -> None:
        self._token = access_token
        self._repo = repo
        self._client = client

    async def commit(self, changes: list[Change], message: str) -> CommitResult:
        """Run the full sequence; never raises for remote failures."""
        try:
            return await self._commit(changes, message)
        except CommitConflict as exc:
            logger.warning("Commit to %s@%s rejected: %s", self._repo.full_name, self._repo.branch, exc)
            return CommitResult(attempted=True, success=False, conflict=True, error=str(exc))
        except CommitAborted as exc:
            logger.warning("Commit to %s@%s aborted: %s", self._repo.full_name, self._repo.branch, exc)
            return CommitResult(attempted=True, success=False, error=str(exc))

    async def _commit(self, changes: list[Change], message: str) -> CommitResult:
        full_name = self._repo.full_name
        branch = self._repo.branch

        # 1-2. Resolve head commit and its tree.  Read-only.
        try:
            head_sha = await self._client.get_branch_head(self._token, full_name, branch)
        except GitHubAPIError as exc:
            raise CommitAborted(f"unresolvable branch head for {branch}: {exc.detail}") from exc
        if not head_sha:
            raise CommitAborted(f"unresolvable branch head for {branch}")

        try:
            base_tree = await self._client.get_commit_tree(self._token, full_name, head_sha)
        except GitHubAPIError as exc:
            raise CommitAborted(f"unresolvable base tree for {head_sha}: {exc.detail}") from exc
        if not base_tree:
            raise CommitAborted(f"unresolvable base tree for {head_sha}")

        # 3. Partition.  The last change for a path wins.
        final: dict[str, Change] = {}
        for change in changes:
            final[change.path] = change
        contents = {p: c for p, c in final.items() if not isinstance(c, DeleteChange)}
        deletions = [p for p, c in final.items() if isinstance(c, DeleteChange)]

        if not contents and not deletions:
            logger.info("Nothing to commit on %s@%s, skipping", full_name, branch)
            return CommitResult(
                attempted=True,
                success=False,
                skipped=True,
                message="No changes to commit",
            )

        # 4. Blobs.  Any failure aborts before a ref is touched.
        blob_shas: dict[str, str] = {}
        for path, change in contents.items():
            try:
                blob_shas[path] = await self._client.create_blob(
                    self._token, full_name, text_to_bytes(change.new_content),
                )
            except GitHubAPIError as exc:
                raise CommitAborted(f"blob creation failed for {path}: {exc.detail}") from exc

        # 5-6. Tree on top of the base tree, then the commit object.
        entries = [
            {"path": path, "mode": github_client.REGULAR_FILE_MODE, "type": "blob", "sha": sha}
            for path, sha in blob_shas.items()
        ]
        entries.extend(
            {"path": path, "mode": github_client.REGULAR_FILE_MODE, "type": "blob", "sha": None}
            for path in deletions
        )
        try:
            tree_sha = await self._client.create_tree(self._token, full_name, base_tree, entries)
            commit_sha = await self._client.create_commit(
                self._token, full_name, tree_sha, [head_sha], message,
            )
        except GitHubAPIError as exc:
            raise CommitAborted(f"commit object creation failed: {exc.detail}") from exc

        # 7. Fast-forward the branch.  Rejection = someone else won the race.
        try:
            await self._client.update_ref(self._token, full_name, branch, commit_sha)
        except GitHubAPIError as exc:
            if exc.status in _CONFLICT_STATUSES:
                raise CommitConflict(
                    f"commit conflict: {branch} moved since {head_sha[:7]} ({exc.detail})"
                ) from exc
            raise CommitAborted(f"ref update failed: {exc.detail}") from exc

        changed = list(blob_shas) + deletions
        logger.info(
            "Committed %d change(s) to %s@%s as %s",
            len(changed), full_name, branch, commit_sha[:7],
        )
        return CommitResult(
            attempted=True,
            success=True,
            commit_sha=commit_sha,
            commit_url=github_client.commit_url(full_name, commit_sha),
            changed_paths=changed,
            message=f"Committed {len(changed)} change(s) to {branch}",
        )


def build_commit_message(prefix: str, summary: str, instruction: str, max_chars: int) -> str:
    """``"<prefix>: <summary or instruction>"`` with the body capped."""
    base = summary.strip() if summary and summary.strip() else instruction.strip()
    first_line = base.splitlines()[0] if base else "automated change"
    return f"{prefix}: {first_line[:max_chars]}"
