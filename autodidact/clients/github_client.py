"""GitHub API client -- git object primitives, file contents, and ref comparison.

Every call is a single request.  Non-2xx responses raise
:class:`~autodidact.errors.GitHubAPIError` immediately; there is no retry
layer here, so callers decide what a failure means for their phase.
"""

from dataclasses import dataclass
from urllib.parse import quote

import httpx

from autodidact.config import settings
from autodidact.errors import GitHubAPIError
from autodidact.services.task.codec import decode_content, encode_content

GITHUB_API_VERSION = "2022-11-28"

# Git object mode for a regular (non-executable) file.
REGULAR_FILE_MODE = "100644"

# ── Shared HTTP client (connection pooling) ─────────────────────────────────

_client: httpx.AsyncClient | None = None


def _get_client() -> httpx.AsyncClient:
    """Return (or create) the shared httpx client for GitHub API calls."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=settings.GITHUB_TIMEOUT_SECS)
    return _client


async def close_client() -> None:
    """Close the shared HTTP client.  Called during app shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


# ── Helpers ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RemoteFile:
    """A file as stored on the remote at a given ref."""

    path: str
    content: bytes
    sha: str


def _auth_headers(access_token: str) -> dict:
    """Return standard GitHub API headers; auth is omitted for anonymous reads."""
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": GITHUB_API_VERSION,
    }
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    return headers


def _encode_path(path: str) -> str:
    """Quote each path segment, keeping the separators."""
    return "/".join(quote(segment, safe="") for segment in path.split("/"))


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase or "GitHub request failed"
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return response.reason_phrase or "GitHub request failed"


async def _request(
    method: str,
    path: str,
    access_token: str,
    *,
    json: dict | None = None,
    params: dict | None = None,
) -> dict | list | None:
    """Send one request to the GitHub REST API and return the decoded body."""
    client = _get_client()
    try:
        response = await client.request(
            method,
            f"{settings.GITHUB_API_BASE}{path}",
            json=json,
            params=params,
            headers=_auth_headers(access_token),
        )
    except httpx.RequestError as exc:
        raise GitHubAPIError(0, f"{type(exc).__name__}: {exc}") from exc

    if response.status_code >= 400:
        raise GitHubAPIError(response.status_code, _error_message(response))
    if response.status_code == 204 or not response.content:
        return None
    try:
        return response.json()
    except ValueError as exc:
        raise GitHubAPIError(response.status_code, "Unable to parse GitHub response") from exc


# ── Git data primitives ─────────────────────────────────────────────────────


async def get_branch_head(access_token: str, full_name: str, branch: str) -> str:
    """Return the commit SHA the branch currently points at."""
    data = await _request(
        "GET",
        f"/repos/{full_name}/git/ref/heads/{quote(branch, safe='')}",
        access_token,
    )
    sha = ((data or {}).get("object") or {}).get("sha")
    if not sha:
        raise GitHubAPIError(200, f"Ref heads/{branch} has no object sha")
    return sha


async def get_commit_tree(access_token: str, full_name: str, commit_sha: str) -> str:
    """Return the tree SHA of a commit."""
    data = await _request("GET", f"/repos/{full_name}/git/commits/{commit_sha}", access_token)
    sha = ((data or {}).get("tree") or {}).get("sha")
    if not sha:
        raise GitHubAPIError(200, f"Commit {commit_sha} has no tree sha")
    return sha


async def create_blob(access_token: str, full_name: str, content: bytes) -> str:
    """Create a blob from raw bytes (sent base64-encoded) and return its SHA."""
    data = await _request(
        "POST",
        f"/repos/{full_name}/git/blobs",
        access_token,
        json={"content": encode_content(content), "encoding": "base64"},
    )
    return data["sha"]


async def create_tree(
    access_token: str,
    full_name: str,
    base_tree: str,
    entries: list[dict],
) -> str:
    """Create a tree layered on *base_tree*.

    Each entry is ``{path, mode, type, sha}``; ``sha: None`` removes the path.
    """
    data = await _request(
        "POST",
        f"/repos/{full_name}/git/trees",
        access_token,
        json={"base_tree": base_tree, "tree": entries},
    )
    return data["sha"]


async def create_commit(
    access_token: str,
    full_name: str,
    tree_sha: str,
    parents: list[str],
    message: str,
) -> str:
    """Create a commit object and return its SHA (does not move any ref)."""
    data = await _request(
        "POST",
        f"/repos/{full_name}/git/commits",
        access_token,
        json={"message": message, "tree": tree_sha, "parents": parents},
    )
    return data["sha"]


async def update_ref(access_token: str, full_name: str, branch: str, sha: str) -> None:
    """Fast-forward ``heads/<branch>`` to *sha*.

    ``force`` is always false: GitHub answers 422 ("Update is not a fast
    forward") when the branch moved since the commit's parent was read.
    """
    await _request(
        "PATCH",
        f"/repos/{full_name}/git/refs/heads/{quote(branch, safe='')}",
        access_token,
        json={"sha": sha, "force": False},
    )


# ── Reads ────────────────────────────────────────────────────────────────────


async def get_file_contents(
    access_token: str,
    full_name: str,
    path: str,
    ref: str,
) -> RemoteFile | None:
    """Fetch a single file at *ref*.

    Returns None when the path does not exist or is not a regular file
    (directory listings, symlinks, submodules).
    """
    try:
        data = await _request(
            "GET",
            f"/repos/{full_name}/contents/{_encode_path(path)}",
            access_token,
            params={"ref": ref},
        )
    except GitHubAPIError as exc:
        if exc.status == 404:
            return None
        raise
    if not isinstance(data, dict) or data.get("type") != "file":
        return None
    raw = data.get("content") or ""
    if data.get("encoding") == "base64":
        content = decode_content(raw)
    else:
        content = raw.encode("utf-8")
    return RemoteFile(path=path, content=content, sha=data.get("sha", ""))


async def list_tree_recursive(access_token: str, full_name: str, sha: str) -> list[dict]:
    """Fetch the full file tree at *sha*.

    Returns list of dicts with path, type ('blob'|'tree'), sha, and size
    (bytes, blobs only).  Truncated trees return whatever GitHub provides.
    """
    data = await _request(
        "GET",
        f"/repos/{full_name}/git/trees/{sha}",
        access_token,
        params={"recursive": "1"},
    )
    return [
        {
            "path": item["path"],
            "type": item["type"],
            "sha": item.get("sha"),
            "size": item.get("size", 0),
        }
        for item in (data or {}).get("tree", [])
    ]


async def compare_refs(access_token: str, full_name: str, base: str, head: str) -> dict:
    """Compare two refs: ``GET /repos/{owner}/{repo}/compare/{base}...{head}``.

    Returns dict with keys:
      - ahead_by: commits reachable from head but not base
      - behind_by: commits reachable from base but not head
      - status: "identical" | "ahead" | "behind" | "diverged"
      - files: list of {path, status, additions, deletions, changes}
    """
    data = await _request(
        "GET",
        f"/repos/{full_name}/compare/{quote(base, safe='')}...{quote(head, safe='')}",
        access_token,
    )
    data = data or {}
    return {
        "ahead_by": int(data.get("ahead_by", 0)),
        "behind_by": int(data.get("behind_by", 0)),
        "status": data.get("status", "identical"),
        "files": [
            {
                "path": f["filename"],
                "status": f.get("status", "modified"),
                "additions": f.get("additions", 0),
                "deletions": f.get("deletions", 0),
                "changes": f.get("changes", 0),
            }
            for f in data.get("files", [])
        ],
    }


def commit_url(full_name: str, sha: str) -> str:
    """Browser URL for a commit."""
    return f"{settings.GITHUB_WEB_BASE}/{full_name}/commit/{sha}"
