"""Shared test fixtures.

Provides:
- ``set_test_config`` -- autouse fixture that patches common settings
- ``reset_services`` -- autouse fixture that gives every test a fresh store
  and empty rate-limit windows
- ``remote`` -- :class:`FakeRemote`, an in-memory git object store that
  speaks the ``github_client`` primitive API
- ``store`` -- an :class:`InMemoryTaskStore`
"""

import hashlib
import itertools
from typing import Awaitable, Callable

import pytest
from fastapi.testclient import TestClient

from autodidact.api.rate_limit import task_limiter, webhook_limiter
from autodidact.clients.github_client import RemoteFile
from autodidact.errors import GitHubAPIError
from autodidact.main import create_app
from autodidact.services import task_service
from autodidact.services.task.store import InMemoryTaskStore


def pytest_configure(config):
    """Register custom markers.

    Tests that need a real database should be decorated with
    ``@pytest.mark.integration`` and deselected with ``-m 'not integration'``.
    """
    config.addinivalue_line(
        "markers",
        "integration: tests requiring external services (database, cache, etc.)",
    )


# ---------------------------------------------------------------------------
# Canonical test identifiers
# ---------------------------------------------------------------------------

OWNER = "octocat"
REPO_NAME = "hello-world"
FULL_NAME = f"{OWNER}/{REPO_NAME}"
TOKEN = "gho_testtoken123"

# ---------------------------------------------------------------------------
# Environment patching
# ---------------------------------------------------------------------------

_SETTINGS_PATCHES: dict[str, object] = {
    "autodidact.config.settings.TASK_STORE": "memory",
    "autodidact.config.settings.DATABASE_URL": "",
    "autodidact.config.settings.GITHUB_WEBHOOK_SECRET": "whsec_test",
    "autodidact.config.settings.GITHUB_SERVICE_TOKEN": "",
    "autodidact.config.settings.GITHUB_API_BASE": "https://api.github.test",
    "autodidact.config.settings.GITHUB_WEB_BASE": "https://github.test",
    "autodidact.config.settings.LLM_PROVIDER": "anthropic",
    "autodidact.config.settings.ANTHROPIC_API_KEY": "test-key",
    "autodidact.config.settings.FORCE_MODEL": "",
    "autodidact.config.settings.LLM_PLANNER_MODEL": "",
    "autodidact.config.settings.LLM_SYNTHESIZER_MODEL": "",
    "autodidact.config.settings.FRONTEND_URL": "http://localhost:5173",
}


@pytest.fixture(autouse=True)
def set_test_config(monkeypatch):
    """Patch application settings for a deterministic, offline test run."""
    for target, value in _SETTINGS_PATCHES.items():
        monkeypatch.setattr(target, value)


@pytest.fixture(autouse=True)
def reset_services():
    """Fresh process-wide store and rate-limit windows around every test."""
    task_service.set_store(None)
    task_service._active_tasks.clear()
    task_limiter.reset()
    webhook_limiter.reset()
    yield
    task_service.set_store(None)
    task_service._active_tasks.clear()
    task_limiter.reset()
    webhook_limiter.reset()


@pytest.fixture
def store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest.fixture
def test_client() -> TestClient:
    """A fresh ``TestClient`` wrapping a new app (lifespan not started)."""
    return TestClient(create_app(), raise_server_exceptions=False)


# ---------------------------------------------------------------------------
# In-memory remote repository
# ---------------------------------------------------------------------------


class FakeRemote:
    """Commit DAG kept in dicts, exposing the ``github_client`` primitives.

    ``update_ref`` only fast-forwards: it answers 422 unless the current
    branch head is an ancestor of the new commit, like the real API.

    Fault injection:
      ``fail(method, status, on_call)`` makes the *on_call*-th call of
      *method* raise ``GitHubAPIError(status)``.
      ``before(method, hook)`` awaits ``hook()`` at the start of every
      call to *method* (used to move a branch mid-commit).
    """

    def __init__(self, full_name: str = FULL_NAME) -> None:
        self.full_name = full_name
        self.blobs: dict[str, bytes] = {}
        self.trees: dict[str, dict[str, str]] = {}
        self.commits: dict[str, dict] = {}
        self.refs: dict[str, str] = {}
        self.calls: dict[str, int] = {}
        self.tokens: list[str] = []
        self._faults: dict[str, tuple[int, int]] = {}
        self._hooks: dict[str, Callable[[], Awaitable[None]]] = {}
        self._seq = itertools.count(1)

    # ── test helpers ─────────────────────────────────────────────────────

    def _sha(self, kind: str, payload: bytes) -> str:
        return hashlib.sha1(f"{kind}:{next(self._seq)}:".encode() + payload).hexdigest()

    def _store_blob(self, content: bytes) -> str:
        sha = self._sha("blob", content)
        self.blobs[sha] = content
        return sha

    def _store_commit(self, tree_sha: str, parents: list[str], message: str) -> str:
        sha = self._sha("commit", message.encode())
        self.commits[sha] = {"tree": tree_sha, "parents": list(parents), "message": message}
        return sha

    def seed(self, files: dict[str, str], branch: str = "main", message: str = "initial") -> str:
        """Create a root commit holding *files* and point *branch* at it."""
        tree = {path: self._store_blob(text.encode()) for path, text in files.items()}
        tree_sha = self._sha("tree", b"")
        self.trees[tree_sha] = tree
        self.refs[branch] = self._store_commit(tree_sha, [], message)
        return self.refs[branch]

    def push(
        self,
        files: dict[str, str],
        deletions: list[str] | None = None,
        branch: str = "main",
        message: str = "remote edit",
    ) -> str:
        """Simulate another writer landing a commit on *branch*."""
        head = self.refs[branch]
        tree = dict(self.trees[self.commits[head]["tree"]])
        for path, text in files.items():
            tree[path] = self._store_blob(text.encode())
        for path in deletions or []:
            tree.pop(path, None)
        tree_sha = self._sha("tree", b"")
        self.trees[tree_sha] = tree
        self.refs[branch] = self._store_commit(tree_sha, [head], message)
        return self.refs[branch]

    def files_at(self, ref: str = "main") -> dict[str, str]:
        commit = self._resolve(ref)
        tree = self.trees[self.commits[commit]["tree"]]
        return {path: self.blobs[sha].decode() for path, sha in tree.items()}

    def fail(self, method: str, status: int = 500, on_call: int = 1) -> None:
        self._faults[method] = (on_call, status)

    def before(self, method: str, hook: Callable[[], Awaitable[None]]) -> None:
        self._hooks[method] = hook

    def count(self, method: str) -> int:
        return self.calls.get(method, 0)

    @property
    def object_count(self) -> int:
        return len(self.blobs) + len(self.trees) + len(self.commits)

    async def _enter(self, method: str, token: str) -> None:
        self.calls[method] = self.calls.get(method, 0) + 1
        self.tokens.append(token)
        hook = self._hooks.get(method)
        if hook is not None:
            await hook()
        fault = self._faults.get(method)
        if fault and fault[0] == self.calls[method]:
            raise GitHubAPIError(fault[1], f"injected {method} failure")

    def _resolve(self, ref: str) -> str:
        if ref in self.refs:
            return self.refs[ref]
        if ref in self.commits:
            return ref
        raise GitHubAPIError(404, f"No commit found for {ref}")

    def _ancestors(self, sha: str) -> set[str]:
        seen: set[str] = set()
        pending = [sha]
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(self.commits[current]["parents"])
        return seen

    # ── github_client primitives ─────────────────────────────────────────

    async def get_branch_head(self, access_token, full_name, branch):
        await self._enter("get_branch_head", access_token)
        if branch not in self.refs:
            raise GitHubAPIError(404, "Not Found")
        return self.refs[branch]

    async def get_commit_tree(self, access_token, full_name, commit_sha):
        await self._enter("get_commit_tree", access_token)
        if commit_sha not in self.commits:
            raise GitHubAPIError(404, "Not Found")
        return self.commits[commit_sha]["tree"]

    async def create_blob(self, access_token, full_name, content):
        await self._enter("create_blob", access_token)
        return self._store_blob(content)

    async def create_tree(self, access_token, full_name, base_tree, entries):
        await self._enter("create_tree", access_token)
        tree = dict(self.trees[base_tree])
        for entry in entries:
            if entry["sha"] is None:
                if entry["path"] not in tree:
                    raise GitHubAPIError(422, f"path {entry['path']} not in base tree")
                del tree[entry["path"]]
            else:
                tree[entry["path"]] = entry["sha"]
        sha = self._sha("tree", repr(sorted(tree.items())).encode())
        self.trees[sha] = tree
        return sha

    async def create_commit(self, access_token, full_name, tree_sha, parents, message):
        await self._enter("create_commit", access_token)
        return self._store_commit(tree_sha, parents, message)

    async def update_ref(self, access_token, full_name, branch, sha):
        await self._enter("update_ref", access_token)
        current = self.refs.get(branch)
        if current is None:
            raise GitHubAPIError(404, "Reference does not exist")
        if current not in self._ancestors(sha):
            raise GitHubAPIError(422, "Update is not a fast forward")
        self.refs[branch] = sha

    async def get_file_contents(self, access_token, full_name, path, ref):
        await self._enter("get_file_contents", access_token)
        tree = self.trees[self.commits[self._resolve(ref)]["tree"]]
        if path not in tree:
            return None
        return RemoteFile(path=path, content=self.blobs[tree[path]], sha=tree[path])

    async def list_tree_recursive(self, access_token, full_name, sha):
        await self._enter("list_tree_recursive", access_token)
        tree = self.trees[self.commits[self._resolve(sha)]["tree"]]
        return [
            {"path": p, "type": "blob", "sha": s, "size": len(self.blobs[s])}
            for p, s in sorted(tree.items())
        ]

    async def compare_refs(self, access_token, full_name, base, head):
        await self._enter("compare_refs", access_token)
        base_sha, head_sha = self._resolve(base), self._resolve(head)
        base_anc, head_anc = self._ancestors(base_sha), self._ancestors(head_sha)
        ahead = len(head_anc - base_anc)
        behind = len(base_anc - head_anc)
        if ahead and behind:
            status = "diverged"
        elif ahead:
            status = "ahead"
        elif behind:
            status = "behind"
        else:
            status = "identical"
        # Three-dot semantics: files changed on head since the merge base.
        common = base_anc & head_anc
        merge_base = max(common, key=lambda s: len(self._ancestors(s))) if common else None
        base_tree = self.trees[self.commits[merge_base]["tree"]] if merge_base else {}
        head_tree = self.trees[self.commits[head_sha]["tree"]]
        files = []
        for path in sorted(set(base_tree) | set(head_tree)):
            if base_tree.get(path) == head_tree.get(path):
                continue
            if path not in base_tree:
                file_status = "added"
            elif path not in head_tree:
                file_status = "removed"
            else:
                file_status = "modified"
            files.append({"path": path, "status": file_status, "additions": 0, "deletions": 0, "changes": 0})
        return {"ahead_by": ahead, "behind_by": behind, "status": status, "files": files}


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()
